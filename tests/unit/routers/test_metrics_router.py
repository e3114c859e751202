"""Unit tests for the metrics endpoint and recorders."""

from fastapi import FastAPI
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from bookmark_pipeline.jobs.models import QueueStats
from bookmark_pipeline.jobs.types import QueueName
from bookmark_pipeline.routers import metrics


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_record_job_counts_outcome():
    before = sample("bookmark_pipeline_jobs_processed_total", queue="index", outcome="retry")
    metrics.record_job("index", "retry", 0.3)
    after = sample("bookmark_pipeline_jobs_processed_total", queue="index", outcome="retry")
    assert after == before + 1


def test_set_queue_stats():
    metrics.set_queue_stats(
        QueueStats(queue=QueueName.MAINTENANCE, waiting=3, active=1, completed=9, failed=2, delayed=1)
    )
    assert sample("bookmark_pipeline_queue_jobs", queue="maintenance", status="waiting") == 3
    assert sample("bookmark_pipeline_queue_jobs", queue="maintenance", status="failed") == 2


def test_metrics_endpoint():
    metrics.record_enqueue("snapshot", "accepted")
    app = FastAPI()
    app.include_router(metrics.router)

    response = TestClient(app).get("/metrics")

    assert response.status_code == 200
    assert "bookmark_pipeline_jobs_enqueued_total" in response.text
