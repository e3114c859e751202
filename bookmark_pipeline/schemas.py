"""API request and response models."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from bookmark_pipeline.jobs.models import Job, JobHandle, QueueStats


class DependencyHealth(BaseModel):
    """Health status for a dependency."""

    status: str = Field(..., description="Dependency status (ok/error/unconfigured)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status")
    database: DependencyHealth = Field(..., description="Bookmark store / queue database")
    search: DependencyHealth = Field(..., description="Search engine")
    queue_mode: str = Field(..., description="Job broker backend")
    circuits: dict[str, Any] = Field(default_factory=dict, description="Circuit breakers")
    version: str = Field(..., description="Service version")


class EnqueueBody(BaseModel):
    """Job submission. ``payload`` is validated against the queue's schema."""

    payload: dict[str, Any] = Field(..., description="Queue-specific payload (camelCase keys)")
    job_id: Optional[str] = Field(None, min_length=1, description="Explicit dedup id")
    priority: Optional[int] = Field(None, ge=1, description="Lower runs first")


class JobHandleResponse(BaseModel):
    id: str
    queue: str
    outcome: str
    status: str

    @classmethod
    def from_handle(cls, handle: JobHandle) -> "JobHandleResponse":
        return cls(
            id=handle.id,
            queue=handle.queue.value,
            outcome=handle.outcome.value,
            status=handle.status.value,
        )


class JobResponse(BaseModel):
    """Full job record for operators."""

    id: str
    queue: str
    status: str
    payload: dict[str, Any]
    priority: int
    attempt: int
    max_attempts: int
    run_after: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            queue=job.queue.value,
            status=job.status.value,
            payload=job.payload,
            priority=int(job.priority),
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            run_after=job.run_after,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            locked_by=job.locked_by,
            result=job.result,
            last_error=job.last_error,
        )


class QueueStatsResponse(BaseModel):
    queue: str
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueStatsResponse":
        return cls(**stats.as_dict())
