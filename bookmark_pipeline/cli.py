#!/usr/bin/env python
"""
Command-line entry point for workers and queue operations.

Usage:
    bookmark-pipeline worker {snapshot|index|maintenance} [--concurrency N]
    bookmark-pipeline enqueue QUEUE PAYLOAD_JSON [--job-id ID] [--priority N]
    bookmark-pipeline stats [QUEUE]
    bookmark-pipeline retry QUEUE JOB_ID
    bookmark-pipeline purge
    bookmark-pipeline schedule [--once] [--owner-id ID] [--interval SECONDS]
    bookmark-pipeline configure-index

Examples:
    # Run the snapshot worker pool
    bookmark-pipeline worker snapshot

    # Archive one bookmark
    bookmark-pipeline enqueue snapshot '{"bookmarkId": "b1", "url": "https://example.com/a",
        "ownerId": "u1", "ownerPlan": "pro"}'

    # Scan one user's links now
    bookmark-pipeline enqueue maintenance '{"type": "broken-link-scan", "ownerId": "u1"}'

    # Resubmit a terminally failed job
    bookmark-pipeline retry snapshot b1
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

import structlog

from bookmark_pipeline.config import Settings, get_settings
from bookmark_pipeline.core.errors import PipelineError
from bookmark_pipeline.core.logging import configure_logging
from bookmark_pipeline.jobs.broker import JobQueue, get_job_queue
from bookmark_pipeline.jobs.types import QueueName

logger = structlog.get_logger(__name__)

QUEUE_CHOICES = [q.value for q in QueueName]


async def _open_broker(settings: Settings):
    """Return (broker, pool). The pool is None in memory mode."""
    from bookmark_pipeline.db import create_pool

    pool = None
    if settings.job_queue_mode == "postgres":
        pool = await create_pool(settings)
    return get_job_queue(pool), pool


async def _close(broker: JobQueue, pool) -> None:
    await broker.close()
    if pool is not None:
        await pool.close()


def build_context(queue: QueueName, settings: Settings, pool) -> dict[str, Any]:
    """Resources a worker pool hands to its stage handler."""
    from bookmark_pipeline.repositories.bookmarks import BookmarkRepository
    from bookmark_pipeline.services.storage import create_object_storage

    ctx: dict[str, Any] = {
        "settings": settings,
        "bookmarks": BookmarkRepository(pool),
        "storage": create_object_storage(settings),
    }

    if queue == QueueName.SNAPSHOT:
        from bookmark_pipeline.services.browser import BrowserManager

        ctx["browser"] = BrowserManager.from_settings(settings)
    elif queue == QueueName.INDEX:
        from bookmark_pipeline.services.search_index import SearchIndexClient

        ctx["search"] = SearchIndexClient.from_settings(settings)
    else:
        from bookmark_pipeline.services.link_checker import LinkChecker

        ctx["link_checker"] = LinkChecker(
            timeout=settings.link_check_timeout_s,
            user_agent=settings.browser_user_agent,
        )
    return ctx


async def cmd_worker(args: argparse.Namespace) -> int:
    """Run one queue's worker pool until SIGINT/SIGTERM."""
    import bookmark_pipeline.jobs.handlers  # noqa: F401
    from bookmark_pipeline.core.sentry import init_sentry
    from bookmark_pipeline.db import create_pool
    from bookmark_pipeline.jobs.worker import WorkerPool

    settings = get_settings()
    queue = QueueName(args.queue)
    init_sentry(settings, component=f"{queue.value}-worker")

    # Bookmark store access always needs the database, whatever the broker mode.
    pool = await create_pool(settings)
    broker = get_job_queue(pool)
    worker = WorkerPool.from_settings(queue, broker, build_context(queue, settings, pool), settings)
    if args.concurrency:
        worker.concurrency = args.concurrency

    try:
        await worker.run()
    finally:
        await _close(broker, pool)
    return 0


async def cmd_enqueue(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        logger.error("invalid_payload_json", error=str(e))
        return 2

    settings = get_settings()
    broker, pool = await _open_broker(settings)
    try:
        handle = await broker.enqueue(
            QueueName(args.queue), payload, job_id=args.job_id, priority=args.priority
        )
    except PipelineError as e:
        logger.error("enqueue_failed", queue=args.queue, error=e.message)
        return 1
    finally:
        await _close(broker, pool)

    print(
        json.dumps(
            {
                "id": handle.id,
                "queue": handle.queue.value,
                "outcome": handle.outcome.value,
                "status": handle.status.value,
            }
        )
    )
    return 0


async def cmd_stats(args: argparse.Namespace) -> int:
    settings = get_settings()
    broker, pool = await _open_broker(settings)
    queues = [QueueName(args.queue)] if args.queue else list(QueueName)
    try:
        rows = [(await broker.stats(q)).as_dict() for q in queues]
    finally:
        await _close(broker, pool)

    print(f"{'QUEUE':<12} {'WAITING':>8} {'DELAYED':>8} {'ACTIVE':>8} {'DONE':>8} {'FAILED':>8}")
    for row in rows:
        print(
            f"{row['queue']:<12} {row['waiting']:>8} {row['delayed']:>8} {row['active']:>8} "
            f"{row['completed']:>8} {row['failed']:>8}"
        )
    return 0


async def cmd_retry(args: argparse.Namespace) -> int:
    settings = get_settings()
    broker, pool = await _open_broker(settings)
    try:
        job = await broker.retry(QueueName(args.queue), args.job_id)
    except PipelineError as e:
        logger.error("retry_failed", queue=args.queue, job_id=args.job_id, error=e.message)
        return 1
    finally:
        await _close(broker, pool)

    print(f"Resubmitted {job.queue.value}/{job.id} (status={job.status.value})")
    return 0


async def cmd_purge(args: argparse.Namespace) -> int:
    from datetime import timedelta

    settings = get_settings()
    broker, pool = await _open_broker(settings)
    try:
        reaped = await broker.reap_stale(timedelta(minutes=settings.job_stale_timeout_minutes))
        purged = await broker.purge_expired()
    finally:
        await _close(broker, pool)

    print(f"Released {reaped} stale lease(s), purged {purged} expired job(s)")
    return 0


async def cmd_schedule(args: argparse.Namespace) -> int:
    """Submit maintenance scans once, or on an interval until interrupted."""
    import signal

    from bookmark_pipeline.core.sentry import init_sentry
    from bookmark_pipeline.jobs.scheduler import MaintenanceScheduler

    settings = get_settings()
    init_sentry(settings, component="scheduler")
    interval = args.interval if args.interval is not None else settings.maintenance_schedule_interval_s

    broker, pool = await _open_broker(settings)
    scheduler = MaintenanceScheduler(broker, interval_s=interval)
    try:
        if args.once or interval <= 0:
            handles = await scheduler.run_once(owner_id=args.owner_id)
            for handle in handles:
                print(f"{handle.queue.value}/{handle.id} {handle.outcome.value}")
            return 0

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        await scheduler.start()
        await stop.wait()
        await scheduler.stop()
        return 0
    finally:
        await _close(broker, pool)


async def cmd_configure_index(args: argparse.Namespace) -> int:
    from bookmark_pipeline.services.search_index import SearchIndexClient

    client = SearchIndexClient.from_settings(get_settings())
    try:
        await client.configure_index()
    except PipelineError as e:
        logger.error("configure_index_failed", error=e.message)
        return 1
    finally:
        await client.close()
    print(f"Search index '{client.index}' configured")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookmark-pipeline",
        description="Bookmark content pipeline workers and queue operations",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run a worker pool for one queue")
    worker.add_argument("queue", choices=QUEUE_CHOICES)
    worker.add_argument("--concurrency", type=int, default=None, help="Override pool size")
    worker.set_defaults(func=cmd_worker)

    enqueue = sub.add_parser("enqueue", help="Submit a job")
    enqueue.add_argument("queue", choices=QUEUE_CHOICES)
    enqueue.add_argument("payload", help="JSON payload (camelCase keys)")
    enqueue.add_argument("--job-id", default=None, help="Explicit job id")
    enqueue.add_argument("--priority", type=int, default=None, help="1=high, 5=normal, 10=low")
    enqueue.set_defaults(func=cmd_enqueue)

    stats = sub.add_parser("stats", help="Show job counts per queue")
    stats.add_argument("queue", nargs="?", choices=QUEUE_CHOICES)
    stats.set_defaults(func=cmd_stats)

    retry = sub.add_parser("retry", help="Resubmit a terminally failed job")
    retry.add_argument("queue", choices=QUEUE_CHOICES)
    retry.add_argument("job_id")
    retry.set_defaults(func=cmd_retry)

    purge = sub.add_parser("purge", help="Release stale leases and purge expired jobs")
    purge.set_defaults(func=cmd_purge)

    schedule = sub.add_parser("schedule", help="Submit maintenance scans")
    schedule.add_argument("--once", action="store_true", help="Submit one round and exit")
    schedule.add_argument("--owner-id", default=None, help="Limit --once to one owner")
    schedule.add_argument(
        "--interval", type=float, default=None, help="Seconds between rounds (default from settings)"
    )
    schedule.set_defaults(func=cmd_schedule)

    configure = sub.add_parser("configure-index", help="Create and configure the search index")
    configure.set_defaults(func=cmd_configure_index)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
