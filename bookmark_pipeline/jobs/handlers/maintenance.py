"""Maintenance stage: duplicate detection and broken-link scanning.

Both kinds walk one owner's bookmarks (or every owner's) and persist each
flag change as soon as it is known. A bookmark whose snapshot cannot be read,
whose probe errors out, or whose write fails is counted and skipped; the
rest of the scan continues.
"""

import asyncio
from typing import Any, Optional

import structlog

from bookmark_pipeline.jobs.models import Job, StageResult
from bookmark_pipeline.jobs.payloads import MaintenancePayload
from bookmark_pipeline.jobs.registry import default_registry
from bookmark_pipeline.jobs.types import MaintenanceKind, QueueName
from bookmark_pipeline.repositories.bookmarks import BookmarkRecord, BookmarkStore
from bookmark_pipeline.routers.metrics import DUPLICATES_FLAGGED, record_link_probe
from bookmark_pipeline.services.content import compute_content_hash, extract_snapshot_text
from bookmark_pipeline.services.duplicates import DuplicateCandidate, find_duplicates
from bookmark_pipeline.services.link_checker import LinkChecker
from bookmark_pipeline.services.storage import ObjectStorage

logger = structlog.get_logger(__name__)


@default_registry.handler(QueueName.MAINTENANCE)
async def handle_maintenance(
    job: Job, payload: MaintenancePayload, ctx: dict[str, Any]
) -> StageResult:
    """Dispatch on the maintenance kind. The scan summary becomes the job result."""
    log = logger.bind(job_id=job.id, kind=payload.type.value, owner_id=payload.owner_id)
    log.info("maintenance_scan_started")

    if payload.type == MaintenanceKind.DUPLICATE_DETECTION:
        summary = await detect_duplicates(ctx, payload.owner_id)
    else:
        summary = await scan_broken_links(ctx, payload.owner_id)

    log.info("maintenance_scan_finished", **summary)
    return StageResult(result={"type": payload.type.value, **summary})


async def _content_hash(storage: ObjectStorage, bookmark: BookmarkRecord) -> Optional[str]:
    """Hash of the snapshot's cleaned text; None when there is no text."""
    stored = await storage.get(bookmark.content_snapshot_path)
    text, _ = await asyncio.to_thread(
        extract_snapshot_text, stored.data, stored.content_type, bookmark.content_snapshot_path
    )
    return compute_content_hash(text) if text else None


async def detect_duplicates(ctx: dict[str, Any], owner_id: Optional[str] = None) -> dict[str, int]:
    """Flag same-owner bookmarks sharing a normalized URL or a content hash.

    Every member of a duplicate set is flagged. A stale flag is only cleared
    when the bookmark's content hash could be determined; a bookmark whose
    snapshot read failed keeps its current flag.
    """
    bookmarks: BookmarkStore = ctx["bookmarks"]
    storage: ObjectStorage = ctx["storage"]

    records = await bookmarks.list_for_scan(owner_id)
    candidates: list[DuplicateCandidate] = []
    unknown: set[str] = set()
    errors = 0

    for record in records:
        content_hash = None
        if record.content_snapshot_path:
            try:
                content_hash = await _content_hash(storage, record)
            except Exception as e:
                errors += 1
                unknown.add(record.id)
                logger.warning(
                    "duplicate_hash_failed",
                    bookmark_id=record.id,
                    snapshot_path=record.content_snapshot_path,
                    error=str(e),
                )
        candidates.append(
            DuplicateCandidate(
                bookmark_id=record.id,
                owner_id=record.owner_id,
                url=record.url,
                content_hash=content_hash,
            )
        )

    report = find_duplicates(candidates)
    flagged = cleared = 0

    for record in records:
        is_duplicate = record.id in report.flagged
        if is_duplicate == record.is_duplicate:
            continue
        if not is_duplicate and record.id in unknown:
            continue
        try:
            if not await bookmarks.set_duplicate(record.id, is_duplicate):
                continue
        except Exception as e:
            errors += 1
            logger.warning("duplicate_flag_write_failed", bookmark_id=record.id, error=str(e))
            continue
        if is_duplicate:
            flagged += 1
        else:
            cleared += 1

    if flagged:
        DUPLICATES_FLAGGED.inc(flagged)

    return {
        "scanned": len(records),
        "url_groups": len(report.url_groups),
        "content_groups": len(report.content_groups),
        "duplicates": len(report.flagged),
        "newly_flagged": flagged,
        "cleared": cleared,
        "errors": errors,
    }


async def scan_broken_links(ctx: dict[str, Any], owner_id: Optional[str] = None) -> dict[str, int]:
    """Probe every bookmark URL sequentially and write flag changes.

    4xx/5xx, timeouts and connection errors mark a bookmark broken; 2xx/3xx
    clear a previous broken flag.
    """
    bookmarks: BookmarkStore = ctx["bookmarks"]
    checker: LinkChecker = ctx["link_checker"]
    delay = ctx["settings"].link_check_delay_s

    records = await bookmarks.list_for_scan(owner_id)
    broken = newly_broken = recovered = errors = 0

    for i, record in enumerate(records):
        if i and delay:
            await asyncio.sleep(delay)

        status = await checker.check(record.url)
        record_link_probe(status.is_broken)
        if status.is_broken:
            broken += 1
        if status.error:
            errors += 1

        if status.is_broken == record.is_broken:
            continue
        try:
            if not await bookmarks.set_broken(record.id, status.is_broken):
                continue
        except Exception as e:
            errors += 1
            logger.warning("broken_flag_write_failed", bookmark_id=record.id, error=str(e))
            continue

        if status.is_broken:
            newly_broken += 1
            logger.info(
                "bookmark_marked_broken",
                bookmark_id=record.id,
                url=record.url,
                status_code=status.status_code,
                error=status.error,
            )
        else:
            recovered += 1
            logger.info("bookmark_link_recovered", bookmark_id=record.id, url=record.url)

    return {
        "scanned": len(records),
        "broken": broken,
        "newly_broken": newly_broken,
        "recovered": recovered,
        "errors": errors,
    }
