"""Bookmark store access for the content pipeline.

The pipeline reads bookmark metadata and writes only the columns it owns:
content_snapshot_path, cover_url, content_indexed, is_duplicate, is_broken.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from bookmark_pipeline.core.resilience import with_db_retry
from bookmark_pipeline.jobs.models import BookmarkMutation

logger = structlog.get_logger(__name__)


@dataclass
class Highlight:
    text_selected: str
    annotation_md: Optional[str] = None


@dataclass
class BookmarkRecord:
    """A bookmark row plus the relations the search document needs."""

    id: str
    owner_id: str
    url: str
    title: str = ""
    collection_id: Optional[str] = None
    excerpt: Optional[str] = None
    domain: Optional[str] = None
    type: str = "link"
    cover_url: Optional[str] = None
    content_snapshot_path: Optional[str] = None
    content_indexed: bool = False
    is_duplicate: bool = False
    is_broken: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    tags: list[str] = field(default_factory=list)
    highlights: list[Highlight] = field(default_factory=list)


class BookmarkStore(ABC):
    """Bookmark persistence as seen by the workers."""

    @abstractmethod
    async def get(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        """Load a bookmark with its tags and highlights."""
        ...

    @abstractmethod
    async def list_for_scan(self, owner_id: Optional[str] = None) -> list[BookmarkRecord]:
        """Bookmarks for a maintenance scan, oldest first. None scans every owner."""
        ...

    @abstractmethod
    async def apply(self, mutation: BookmarkMutation) -> bool:
        """Write a mutation. Returns False if the bookmark no longer exists."""
        ...

    async def set_duplicate(self, bookmark_id: str, is_duplicate: bool) -> bool:
        return await self.apply(BookmarkMutation(bookmark_id, is_duplicate=is_duplicate))

    async def set_broken(self, bookmark_id: str, is_broken: bool) -> bool:
        return await self.apply(BookmarkMutation(bookmark_id, is_broken=is_broken))


_BOOKMARK_COLUMNS = """
    id::text AS id, owner_id::text AS owner_id, collection_id::text AS collection_id,
    url, title, excerpt, domain, type, cover_url, content_snapshot_path,
    content_indexed, is_duplicate, is_broken, created_at, updated_at
"""


class BookmarkRepository(BookmarkStore):
    """asyncpg-backed bookmark store."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, bookmark_id: str) -> Optional[BookmarkRecord]:
        async def _load(conn) -> Optional[BookmarkRecord]:
            row = await conn.fetchrow(
                f"SELECT {_BOOKMARK_COLUMNS} FROM bookmarks WHERE id = $1",
                bookmark_id,
            )
            if row is None:
                return None
            tags = await conn.fetch(
                """
                SELECT t.name FROM tags t
                INNER JOIN bookmark_tags bt ON t.id = bt.tag_id
                WHERE bt.bookmark_id = $1
                ORDER BY t.name
                """,
                bookmark_id,
            )
            highlights = await conn.fetch(
                """
                SELECT text_selected, annotation_md FROM highlights
                WHERE bookmark_id = $1
                ORDER BY created_at
                """,
                bookmark_id,
            )
            record = self._row_to_record(row)
            record.tags = [t["name"] for t in tags]
            record.highlights = [
                Highlight(text_selected=h["text_selected"] or "", annotation_md=h["annotation_md"])
                for h in highlights
            ]
            return record

        return await with_db_retry(self._pool, _load)

    async def list_for_scan(self, owner_id: Optional[str] = None) -> list[BookmarkRecord]:
        query = f"SELECT {_BOOKMARK_COLUMNS} FROM bookmarks"
        params: list[Any] = []
        if owner_id:
            query += " WHERE owner_id = $1"
            params.append(owner_id)
        query += " ORDER BY owner_id, created_at, id"

        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, *params))
        return [self._row_to_record(row) for row in rows]

    async def apply(self, mutation: BookmarkMutation) -> bool:
        """Apply a mutation in one UPDATE.

        Builds the SET clause dynamically from the non-None fields.
        """
        if mutation.is_empty:
            return True

        assignments: list[str] = []
        params: list[Any] = [mutation.bookmark_id]
        param_idx = 2

        for column in ("content_snapshot_path", "content_indexed", "is_duplicate", "is_broken"):
            value = getattr(mutation, column)
            if value is not None:
                assignments.append(f"{column} = ${param_idx}")
                params.append(value)
                param_idx += 1

        if mutation.cover_url is not None:
            if mutation.cover_only_if_missing:
                assignments.append(f"cover_url = COALESCE(cover_url, ${param_idx})")
            else:
                assignments.append(f"cover_url = ${param_idx}")
            params.append(mutation.cover_url)
            param_idx += 1

        query = f"""
            UPDATE bookmarks SET {", ".join(assignments)}, updated_at = NOW()
            WHERE id = $1
            RETURNING id
        """
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, *params))
        if row is None:
            logger.warning("bookmark_update_missed", bookmark_id=mutation.bookmark_id)
            return False

        logger.debug(
            "bookmark_updated",
            bookmark_id=mutation.bookmark_id,
            columns=[a.split(" = ")[0] for a in assignments],
        )
        return True

    def _row_to_record(self, row) -> BookmarkRecord:
        return BookmarkRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            title=row["title"] or "",
            collection_id=row["collection_id"],
            excerpt=row["excerpt"],
            domain=row["domain"],
            type=row["type"] or "link",
            cover_url=row["cover_url"],
            content_snapshot_path=row["content_snapshot_path"],
            content_indexed=bool(row["content_indexed"]),
            is_duplicate=bool(row["is_duplicate"]),
            is_broken=bool(row["is_broken"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
