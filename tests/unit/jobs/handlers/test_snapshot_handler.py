"""Tests for the snapshot stage handler."""

import io

import pytest
from PIL import Image

from bookmark_pipeline.core.errors import PageFetchError, PermanentJobError, SnapshotNotFoundError
from bookmark_pipeline.jobs.handlers.snapshot import handle_snapshot
from bookmark_pipeline.jobs.models import Job
from bookmark_pipeline.jobs.payloads import IndexPayload, SnapshotPayload
from bookmark_pipeline.jobs.types import JobPriority, JobStatus, QueueName


def make_job(bookmark_id="b1", url="https://example.com/a"):
    payload = SnapshotPayload(bookmark_id=bookmark_id, url=url, owner_id="u1", owner_plan="pro")
    job = Job(
        id=bookmark_id,
        queue=QueueName.SNAPSHOT,
        status=JobStatus.ACTIVE,
        payload=payload.to_wire(),
        attempt=1,
    )
    return job, payload


class TestHandleSnapshot:
    @pytest.mark.asyncio
    async def test_stores_snapshot_and_thumbnail(self, ctx, storage, browser):
        job, payload = make_job()

        result = await handle_snapshot(job, payload, ctx)

        assert browser.fetched == ["https://example.com/a"]
        assert result.result["snapshot_path"] == "snapshots/u1/b1/page.html"
        assert result.result["thumbnail_path"] == "snapshots/u1/b1/thumbnail.jpg"

        page = await storage.get("snapshots/u1/b1/page.html")
        html = page.data.decode("utf-8")
        assert page.content_type.startswith("text/html")
        assert "The archived body text of the page." in html
        assert "Site banner" not in html
        assert "Copyright footer" not in html
        assert "tracking" not in html

        thumb = await storage.get("snapshots/u1/b1/thumbnail.jpg")
        assert thumb.content_type == "image/jpeg"
        image = Image.open(io.BytesIO(thumb.data))
        assert image.format == "JPEG"
        assert image.size == (640, 360)

    @pytest.mark.asyncio
    async def test_returns_mutation_and_index_job(self, ctx):
        job, payload = make_job()

        result = await handle_snapshot(job, payload, ctx)

        assert result.mutation.bookmark_id == "b1"
        assert result.mutation.content_snapshot_path == "snapshots/u1/b1/page.html"
        assert result.mutation.cover_url == "snapshots/u1/b1/thumbnail.jpg"
        assert result.next_job.queue == QueueName.INDEX
        assert result.next_job.priority == JobPriority.NORMAL
        assert result.next_job.payload == IndexPayload(
            bookmark_id="b1", snapshot_path="snapshots/u1/b1/page.html", owner_id="u1"
        )

    @pytest.mark.asyncio
    async def test_fetch_failure_writes_nothing(self, ctx, storage, browser):
        browser.error = PageFetchError("Timed out after 30.0s", url="https://example.com/a", timed_out=True)
        job, payload = make_job()

        with pytest.raises(PageFetchError):
            await handle_snapshot(job, payload, ctx)

        with pytest.raises(SnapshotNotFoundError):
            await storage.get("snapshots/u1/b1/page.html")

    @pytest.mark.asyncio
    async def test_undecodable_screenshot_is_permanent(self, ctx, browser, monkeypatch):
        async def broken_fetch(url):
            from bookmark_pipeline.services.browser import FetchedPage

            return FetchedPage(url=url, html="<p>x</p>", screenshot=b"not an image")

        monkeypatch.setattr(browser, "fetch", broken_fetch)
        job, payload = make_job()

        with pytest.raises(PermanentJobError):
            await handle_snapshot(job, payload, ctx)
