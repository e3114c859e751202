"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from bookmark_pipeline.jobs.types import EnqueueOutcome, JobPriority, JobStatus, QueueName


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A job in a queue. ``(queue, id)`` is unique."""

    id: str
    queue: QueueName
    status: JobStatus
    payload: dict[str, Any]
    priority: int = JobPriority.NORMAL

    # Retry handling
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = field(default_factory=utcnow)

    # Lease
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome
    result: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt)

    def is_delayed(self, now: Optional[datetime] = None) -> bool:
        """Waiting, but not yet eligible (backoff pending)."""
        return self.status == JobStatus.WAITING and self.run_after > (now or utcnow())


@dataclass(frozen=True)
class JobHandle:
    """What a producer gets back from enqueue."""

    id: str
    queue: QueueName
    outcome: EnqueueOutcome
    status: JobStatus

    @property
    def deduplicated(self) -> bool:
        return self.outcome == EnqueueOutcome.DEDUPLICATED


@dataclass
class QueueStats:
    """Per-status job counts for one queue.

    ``delayed`` is the subset of ``waiting`` still in backoff; ``total`` is
    outstanding work (waiting + active).
    """

    queue: QueueName
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active

    def as_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue.value,
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass(frozen=True)
class BookmarkMutation:
    """Pipeline-owned bookmark columns to write. None leaves a column untouched."""

    bookmark_id: str
    content_snapshot_path: Optional[str] = None
    cover_url: Optional[str] = None
    content_indexed: Optional[bool] = None
    is_duplicate: Optional[bool] = None
    is_broken: Optional[bool] = None
    # The cover is user-visible; never replace one that is already set.
    cover_only_if_missing: bool = True

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.content_snapshot_path,
                self.cover_url,
                self.content_indexed,
                self.is_duplicate,
                self.is_broken,
            )
        )


@dataclass(frozen=True)
class EnqueueRequest:
    """A follow-up job a stage asks the runtime to submit."""

    queue: QueueName
    payload: Any
    job_id: Optional[str] = None
    priority: Optional[int] = None


@dataclass
class StageResult:
    """Outcome of one stage handler.

    The runtime applies ``mutation``, then submits ``next_job``, then acks
    with ``result``. Nothing is applied when the handler raises.
    """

    result: dict[str, Any] = field(default_factory=dict)
    mutation: Optional[BookmarkMutation] = None
    next_job: Optional[EnqueueRequest] = None
