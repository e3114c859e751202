"""Prometheus metrics for the content pipeline."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from bookmark_pipeline.jobs.models import QueueStats

router = APIRouter()

# Job execution metrics
JOBS_PROCESSED = Counter(
    "bookmark_pipeline_jobs_processed_total",
    "Jobs finished by a worker",
    ["queue", "outcome"],  # outcome: completed, retry, failed
)

JOB_DURATION = Histogram(
    "bookmark_pipeline_job_duration_seconds",
    "Wall time of one job execution",
    ["queue"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0],
)

JOBS_IN_FLIGHT = Gauge(
    "bookmark_pipeline_jobs_in_flight",
    "Jobs currently executing in this process",
    ["queue"],
)

JOBS_ENQUEUED = Counter(
    "bookmark_pipeline_jobs_enqueued_total",
    "Job submissions",
    ["queue", "outcome"],  # outcome: accepted, deduplicated
)

# Queue depth (refreshed by the stats endpoint)
QUEUE_JOBS = Gauge(
    "bookmark_pipeline_queue_jobs",
    "Jobs per queue and status",
    ["queue", "status"],
)

# Maintenance metrics
LINK_PROBES = Counter(
    "bookmark_pipeline_link_probes_total",
    "Broken-link probes",
    ["result"],  # healthy, broken
)

DUPLICATES_FLAGGED = Counter(
    "bookmark_pipeline_duplicates_flagged_total",
    "Bookmarks newly flagged as duplicates",
)

BROWSER_LAUNCHES = Counter(
    "bookmark_pipeline_browser_launches_total",
    "Headless browser launches (first launch and relaunches)",
)


def record_job(queue: str, outcome: str, duration: float):
    """Record one finished job execution."""
    JOBS_PROCESSED.labels(queue=queue, outcome=outcome).inc()
    JOB_DURATION.labels(queue=queue).observe(duration)


def record_enqueue(queue: str, outcome: str):
    JOBS_ENQUEUED.labels(queue=queue, outcome=outcome).inc()


def record_link_probe(is_broken: bool):
    LINK_PROBES.labels(result="broken" if is_broken else "healthy").inc()


def set_queue_stats(stats: QueueStats):
    """Export a stats snapshot as gauges."""
    for status in ("waiting", "active", "completed", "failed", "delayed"):
        QUEUE_JOBS.labels(queue=stats.queue.value, status=status).set(getattr(stats, status))


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
