"""Tests for the asyncpg bookmark repository."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookmark_pipeline.jobs.models import BookmarkMutation
from bookmark_pipeline.repositories.bookmarks import BookmarkRepository

NOW = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def bookmark_row(**overrides) -> dict:
    row = {
        "id": "b1",
        "owner_id": "u1",
        "collection_id": None,
        "url": "https://example.com/a",
        "title": None,
        "excerpt": "An excerpt",
        "domain": "example.com",
        "type": None,
        "cover_url": None,
        "content_snapshot_path": None,
        "content_indexed": None,
        "is_duplicate": False,
        "is_broken": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def repo(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return BookmarkRepository(pool)


class TestGet:
    @pytest.mark.asyncio
    async def test_loads_tags_and_highlights(self, repo, conn):
        conn.fetchrow = AsyncMock(return_value=bookmark_row())
        conn.fetch = AsyncMock(
            side_effect=[
                [{"name": "python"}, {"name": "reading"}],
                [{"text_selected": "quoted", "annotation_md": None}],
            ]
        )

        record = await repo.get("b1")

        assert record.id == "b1"
        queries = [conn.fetchrow.call_args.args[0]] + [c.args[0] for c in conn.fetch.call_args_list]
        assert "WHERE id = $1" in queries[0]
        assert "WHERE bt.bookmark_id = $1" in queries[1]
        assert "WHERE bookmark_id = $1" in queries[2]
        assert not any("id::text = " in q for q in queries)
        assert record.title == ""
        assert record.type == "link"
        assert record.content_indexed is False
        assert record.is_broken is True
        assert record.tags == ["python", "reading"]
        assert record.highlights[0].text_selected == "quoted"

    @pytest.mark.asyncio
    async def test_missing_bookmark(self, repo, conn):
        conn.fetchrow = AsyncMock(return_value=None)

        assert await repo.get("gone") is None
        conn.fetch.assert_not_called()


class TestListForScan:
    @pytest.mark.asyncio
    async def test_scoped_to_owner(self, repo, conn):
        conn.fetch = AsyncMock(return_value=[bookmark_row(), bookmark_row(id="b2")])

        records = await repo.list_for_scan("u1")

        assert [r.id for r in records] == ["b1", "b2"]
        query, owner = conn.fetch.call_args.args
        assert "WHERE owner_id = $1" in query
        assert "owner_id::text =" not in query
        assert owner == "u1"

    @pytest.mark.asyncio
    async def test_all_owners(self, repo, conn):
        conn.fetch = AsyncMock(return_value=[])

        await repo.list_for_scan()

        assert len(conn.fetch.call_args.args) == 1
        assert "WHERE" not in conn.fetch.call_args.args[0]


class TestApply:
    @pytest.mark.asyncio
    async def test_builds_set_clause_from_given_fields(self, repo, conn):
        conn.fetchrow = AsyncMock(return_value={"id": "b1"})

        updated = await repo.apply(
            BookmarkMutation(
                "b1",
                content_snapshot_path="snapshots/u1/b1/page.html",
                cover_url="snapshots/u1/b1/thumbnail.jpg",
            )
        )

        assert updated is True
        query, *params = conn.fetchrow.call_args.args
        assert "content_snapshot_path = $2" in query
        assert "cover_url = COALESCE(cover_url, $3)" in query
        assert "content_indexed" not in query
        assert "WHERE id = $1" in query
        assert params == ["b1", "snapshots/u1/b1/page.html", "snapshots/u1/b1/thumbnail.jpg"]

    @pytest.mark.asyncio
    async def test_cover_overwrite_when_requested(self, repo, conn):
        conn.fetchrow = AsyncMock(return_value={"id": "b1"})

        await repo.apply(BookmarkMutation("b1", cover_url="c.jpg", cover_only_if_missing=False))

        assert "cover_url = $2" in conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_missing_row_returns_false(self, repo, conn):
        conn.fetchrow = AsyncMock(return_value=None)

        assert await repo.set_broken("gone", True) is False

    @pytest.mark.asyncio
    async def test_empty_mutation_skips_database(self, repo, conn):
        assert await repo.apply(BookmarkMutation("b1")) is True
        conn.fetchrow.assert_not_called()
