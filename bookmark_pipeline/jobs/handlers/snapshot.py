"""Snapshot stage: render a bookmarked page and archive it.

This handler:
1. Renders the URL in the worker's headless browser
2. Strips boilerplate from the rendered HTML
3. Builds a JPEG thumbnail from the viewport screenshot
4. Stores page.html and thumbnail.jpg under {owner}/{bookmark}/
5. Records both paths on the bookmark and submits an index job
"""

import asyncio
from typing import Any

import structlog

from bookmark_pipeline.jobs.models import BookmarkMutation, EnqueueRequest, Job, StageResult
from bookmark_pipeline.jobs.payloads import IndexPayload, SnapshotPayload
from bookmark_pipeline.jobs.registry import default_registry
from bookmark_pipeline.jobs.types import JobPriority, QueueName
from bookmark_pipeline.services.browser import BrowserManager
from bookmark_pipeline.services.content import extract_main_content
from bookmark_pipeline.services.storage import (
    HTML_CONTENT_TYPE,
    JPEG_CONTENT_TYPE,
    SNAPSHOT_FILE,
    THUMBNAIL_FILE,
    ObjectStorage,
    snapshot_key,
)
from bookmark_pipeline.services.thumbnails import make_thumbnail

logger = structlog.get_logger(__name__)


@default_registry.handler(QueueName.SNAPSHOT)
async def handle_snapshot(job: Job, payload: SnapshotPayload, ctx: dict[str, Any]) -> StageResult:
    """Handle a snapshot job.

    Context:
        browser: BrowserManager owned by this worker process
        storage: ObjectStorage for the archive
        settings: Settings (bucket and thumbnail geometry)

    Returns:
        StageResult with the snapshot/cover mutation and a follow-up index job

    Raises:
        PageFetchError: Navigation failed or timed out (retryable)
        StorageError: Archive write failed (retryable)
    """
    browser: BrowserManager = ctx["browser"]
    storage: ObjectStorage = ctx["storage"]
    settings = ctx["settings"]
    log = logger.bind(job_id=job.id, bookmark_id=payload.bookmark_id)

    page = await browser.fetch(payload.url)
    log.info("page_fetched", url=payload.url, final_url=page.url, status=page.status)

    cleaned = await asyncio.to_thread(extract_main_content, page.html)
    thumbnail = await asyncio.to_thread(
        make_thumbnail,
        page.screenshot,
        settings.thumbnail_width,
        settings.thumbnail_height,
        settings.thumbnail_quality,
    )

    bucket = settings.storage_bucket
    snapshot_path = await storage.put(
        bucket,
        snapshot_key(payload.owner_id, payload.bookmark_id, SNAPSHOT_FILE),
        cleaned.encode("utf-8"),
        HTML_CONTENT_TYPE,
    )
    thumbnail_path = await storage.put(
        bucket,
        snapshot_key(payload.owner_id, payload.bookmark_id, THUMBNAIL_FILE),
        thumbnail,
        JPEG_CONTENT_TYPE,
    )
    log.info(
        "snapshot_stored",
        snapshot_path=snapshot_path,
        thumbnail_path=thumbnail_path,
        html_bytes=len(cleaned),
        thumbnail_bytes=len(thumbnail),
    )

    return StageResult(
        result={
            "snapshot_path": snapshot_path,
            "thumbnail_path": thumbnail_path,
            "status": page.status,
        },
        mutation=BookmarkMutation(
            payload.bookmark_id,
            content_snapshot_path=snapshot_path,
            cover_url=thumbnail_path,
        ),
        next_job=EnqueueRequest(
            queue=QueueName.INDEX,
            payload=IndexPayload(
                bookmark_id=payload.bookmark_id,
                snapshot_path=snapshot_path,
                owner_id=payload.owner_id,
            ),
            priority=JobPriority.NORMAL,
        ),
    )
