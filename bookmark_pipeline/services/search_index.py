"""Search engine client (Meilisearch HTTP API)."""

from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel, Field

from bookmark_pipeline.config import Settings
from bookmark_pipeline.core.errors import SearchIndexError
from bookmark_pipeline.core.resilience import CircuitOpenError, with_search_retry
from bookmark_pipeline.repositories.bookmarks import BookmarkRecord

logger = structlog.get_logger(__name__)

SEARCHABLE_ATTRIBUTES = ["title", "excerpt", "content", "domain", "tags", "highlights_text"]
FILTERABLE_ATTRIBUTES = [
    "owner_id",
    "collection_id",
    "type",
    "domain",
    "tags",
    "created_at",
    "updated_at",
    "has_snapshot",
]
SORTABLE_ATTRIBUTES = ["created_at", "updated_at", "title"]


class SearchDocument(BaseModel):
    """One bookmark as the search engine sees it. Timestamps are epoch seconds."""

    id: str
    owner_id: str
    collection_id: Optional[str] = None
    title: str = ""
    url: str
    domain: str = ""
    excerpt: Optional[str] = None
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    type: str = "link"
    created_at: int = 0
    updated_at: int = 0
    has_snapshot: bool = False
    highlights_text: str = ""


def _epoch(value: Optional[datetime]) -> int:
    return int(value.timestamp()) if value else 0


def build_search_document(bookmark: BookmarkRecord, content: str) -> SearchDocument:
    """Combine bookmark metadata with cleaned body text."""
    highlight_parts: list[str] = []
    for h in bookmark.highlights:
        if h.text_selected:
            highlight_parts.append(h.text_selected)
        if h.annotation_md:
            highlight_parts.append(h.annotation_md)

    return SearchDocument(
        id=bookmark.id,
        owner_id=bookmark.owner_id,
        collection_id=bookmark.collection_id,
        title=bookmark.title,
        url=bookmark.url,
        domain=bookmark.domain or (urlparse(bookmark.url).hostname or ""),
        excerpt=bookmark.excerpt,
        content=content,
        tags=list(bookmark.tags),
        type=bookmark.type,
        created_at=_epoch(bookmark.created_at),
        updated_at=_epoch(bookmark.updated_at),
        has_snapshot=bool(bookmark.content_snapshot_path),
        highlights_text=" ".join(highlight_parts),
    )


class SearchIndexClient:
    """Upsert/delete bookmark documents in one Meilisearch index."""

    def __init__(
        self,
        base_url: str,
        index: str = "bookmarks",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.index = index
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SearchIndexClient":
        return cls(
            base_url=settings.meili_url,
            index=settings.meili_index,
            api_key=settings.meili_api_key,
            timeout=settings.meili_timeout_s,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        async def _send() -> httpx.Response:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response

        try:
            response = await with_search_retry(_send)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise SearchIndexError(
                f"{method} {path} failed: {status} {e.response.text[:200]}",
                status_code=status,
                retryable=status == 429 or status >= 500,
            ) from e
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise SearchIndexError(f"{method} {path} failed: {e}") from e

        return response.json() if response.content else {}

    async def upsert(self, documents: list[SearchDocument]) -> dict[str, Any]:
        """Add or replace documents by primary key ``id``."""
        task = await self._request(
            "POST",
            f"/indexes/{self.index}/documents",
            params={"primaryKey": "id"},
            json=[doc.model_dump() for doc in documents],
        )
        logger.info(
            "search_documents_upserted",
            index=self.index,
            count=len(documents),
            task_uid=task.get("taskUid"),
        )
        return task

    async def delete(self, document_id: str) -> dict[str, Any]:
        task = await self._request("DELETE", f"/indexes/{self.index}/documents/{document_id}")
        logger.info("search_document_deleted", index=self.index, document_id=document_id)
        return task

    async def configure_index(self) -> dict[str, Any]:
        """Create the index if needed and apply attribute settings."""
        try:
            await self._request("POST", "/indexes", json={"uid": self.index, "primaryKey": "id"})
        except SearchIndexError as e:
            # Meilisearch enqueues creation as a task; an existing index is not an error.
            if e.status_code != 409:
                raise
        task = await self._request(
            "PATCH",
            f"/indexes/{self.index}/settings",
            json={
                "searchableAttributes": SEARCHABLE_ATTRIBUTES,
                "filterableAttributes": FILTERABLE_ATTRIBUTES,
                "sortableAttributes": SORTABLE_ATTRIBUTES,
            },
        )
        logger.info("search_index_configured", index=self.index, task_uid=task.get("taskUid"))
        return task

    async def health(self) -> bool:
        try:
            data = await self._request("GET", "/health")
        except SearchIndexError:
            return False
        return data.get("status") == "available"

    async def close(self) -> None:
        await self._client.aclose()
