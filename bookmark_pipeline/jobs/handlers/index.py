"""Index stage: make a stored snapshot searchable."""

import asyncio
from typing import Any

import structlog

from bookmark_pipeline.core.errors import BookmarkNotFoundError
from bookmark_pipeline.jobs.models import BookmarkMutation, Job, StageResult
from bookmark_pipeline.jobs.payloads import IndexPayload
from bookmark_pipeline.jobs.registry import default_registry
from bookmark_pipeline.jobs.types import QueueName
from bookmark_pipeline.repositories.bookmarks import BookmarkStore
from bookmark_pipeline.services.content import extract_snapshot_text
from bookmark_pipeline.services.search_index import SearchIndexClient, build_search_document
from bookmark_pipeline.services.storage import ObjectStorage

logger = structlog.get_logger(__name__)


@default_registry.handler(QueueName.INDEX)
async def handle_index(job: Job, payload: IndexPayload, ctx: dict[str, Any]) -> StageResult:
    """Handle an index job.

    Loads the bookmark and its snapshot (HTML or PDF), extracts clean text
    and upserts one search document keyed by the bookmark id. A snapshot
    with no extractable text is still indexed on its metadata.

    Context:
        bookmarks: BookmarkStore
        storage: ObjectStorage
        search: SearchIndexClient

    Raises:
        BookmarkNotFoundError: The bookmark was deleted (not retried)
        StorageError: Snapshot could not be read
        SearchIndexError: Search engine rejected the upsert
    """
    bookmarks: BookmarkStore = ctx["bookmarks"]
    storage: ObjectStorage = ctx["storage"]
    search: SearchIndexClient = ctx["search"]
    log = logger.bind(job_id=job.id, bookmark_id=payload.bookmark_id)

    bookmark = await bookmarks.get(payload.bookmark_id)
    if bookmark is None:
        raise BookmarkNotFoundError(payload.bookmark_id)

    stored = await storage.get(payload.snapshot_path)
    text, kind = await asyncio.to_thread(
        extract_snapshot_text, stored.data, stored.content_type, payload.snapshot_path
    )
    if not text:
        log.warning("snapshot_text_empty", snapshot_path=payload.snapshot_path, kind=kind)

    document = build_search_document(bookmark, text)
    await search.upsert([document])
    log.info("bookmark_indexed", kind=kind, content_chars=len(text))

    return StageResult(
        result={"kind": kind, "content_chars": len(text)},
        mutation=BookmarkMutation(payload.bookmark_id, content_indexed=True),
    )
