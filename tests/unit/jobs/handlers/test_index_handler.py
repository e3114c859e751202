"""Tests for the index stage handler."""

import fitz
import pytest

from bookmark_pipeline.core.errors import (
    BookmarkNotFoundError,
    SnapshotNotFoundError,
    StorageError,
    is_retryable,
)
from bookmark_pipeline.jobs.handlers.index import handle_index
from bookmark_pipeline.jobs.models import Job
from bookmark_pipeline.jobs.payloads import IndexPayload
from bookmark_pipeline.jobs.types import JobStatus, QueueName
from bookmark_pipeline.repositories.bookmarks import Highlight

HTML = b"""<html><head><style>body { color: red; }</style></head>
<body><h1>Deep Work</h1>
<script>window.secret = "do-not-index";</script>
<p>Focus   is a\r\nskill.</p>
<p>Practice it daily.</p></body></html>"""


def make_job(path="snapshots/u1/b1/page.html"):
    payload = IndexPayload(bookmark_id="b1", snapshot_path=path, owner_id="u1")
    job = Job(id="b1", queue=QueueName.INDEX, status=JobStatus.ACTIVE, payload=payload.to_wire())
    return job, payload


def make_pdf(text: str) -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class TestHandleIndex:
    @pytest.mark.asyncio
    async def test_indexes_html_snapshot(self, ctx, bookmarks, storage, search, bookmark_factory):
        bookmarks.add(
            bookmark_factory(
                "b1",
                "https://blog.example.com/deep-work",
                excerpt="On focus",
                tags=["productivity"],
                highlights=[Highlight("Focus is a skill", "key idea")],
                content_snapshot_path="snapshots/u1/b1/page.html",
            )
        )
        await storage.put("snapshots", "u1/b1/page.html", HTML, "text/html; charset=utf-8")
        job, payload = make_job()

        result = await handle_index(job, payload, ctx)

        doc = search.documents["b1"]
        assert "Deep Work" in doc.content
        assert "Focus is a\nskill." in doc.content
        assert "do-not-index" not in doc.content
        assert "color: red" not in doc.content
        assert "\r" not in doc.content
        assert doc.owner_id == "u1"
        assert doc.domain == "blog.example.com"
        assert doc.tags == ["productivity"]
        assert doc.has_snapshot is True
        assert doc.highlights_text == "Focus is a skill key idea"
        assert result.mutation.content_indexed is True
        assert result.result["kind"] == "html"
        assert result.next_job is None

    @pytest.mark.asyncio
    async def test_indexes_pdf_snapshot(self, ctx, bookmarks, storage, search, bookmark_factory):
        bookmarks.add(bookmark_factory("b1", "https://example.com/paper.pdf"))
        await storage.put("snapshots", "u1/b1/paper.pdf", make_pdf("Attention is all you need"), "application/pdf")
        job, payload = make_job("snapshots/u1/b1/paper.pdf")

        result = await handle_index(job, payload, ctx)

        assert result.result["kind"] == "pdf"
        assert "Attention is all you need" in search.documents["b1"].content

    @pytest.mark.asyncio
    async def test_empty_text_still_completes(self, ctx, bookmarks, storage, search, bookmark_factory):
        bookmarks.add(bookmark_factory("b1", "https://example.com/blank"))
        await storage.put(
            "snapshots", "u1/b1/page.html", b"<html><body>  \n\t </body></html>", "text/html"
        )
        job, payload = make_job()

        result = await handle_index(job, payload, ctx)

        assert search.documents["b1"].content == ""
        assert result.mutation.content_indexed is True

    @pytest.mark.asyncio
    async def test_deleted_bookmark_is_permanent(self, ctx):
        job, payload = make_job()
        with pytest.raises(BookmarkNotFoundError) as exc:
            await handle_index(job, payload, ctx)
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, ctx, bookmarks, search, bookmark_factory):
        bookmarks.add(bookmark_factory("b1", "https://example.com/a"))
        job, payload = make_job()

        with pytest.raises(SnapshotNotFoundError):
            await handle_index(job, payload, ctx)
        assert search.documents == {}

    @pytest.mark.asyncio
    async def test_malformed_snapshot_path_is_permanent(self, ctx, bookmarks, search, bookmark_factory):
        bookmarks.add(bookmark_factory("b1", "https://example.com/a"))
        job, payload = make_job("page.html")

        with pytest.raises(StorageError) as exc:
            await handle_index(job, payload, ctx)
        assert exc.value.retryable is False
        assert is_retryable(exc.value) is False
        assert search.documents == {}
