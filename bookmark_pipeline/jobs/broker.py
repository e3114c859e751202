"""Job queue broker.

Abstract contract for the durable, priority-ordered, at-least-once job store,
with an in-memory implementation for single-process deployments and tests.
``PostgresJobQueue`` (repositories/jobs.py) is the multi-replica backend.

Semantics shared by every implementation:

- ``(queue, id)`` is the dedup key. Submitting an id that is waiting, active
  or completed within the retention window returns the existing job's handle.
  Submitting the id of a terminally failed job is an explicit resubmission
  and resets it to waiting with a fresh retry budget.
- ``attempt`` is incremented on dequeue. A retryable failure of attempt n
  waits ``backoff(n)`` before the job is eligible again; once
  ``attempt >= max_attempts`` the job is terminally failed.
- At most ``rate_limit_per_second`` dequeues per queue per wall-clock second.
- A job is leased to exactly one worker while active. Ack/fail from a worker
  that no longer holds the lease is ignored.
  Workers renew their lease with ``touch`` while a handler runs, so only
  leases from crashed workers go stale.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from bookmark_pipeline.core.errors import JobNotFoundError, JobStateError
from bookmark_pipeline.jobs.models import Job, JobHandle, QueueStats, utcnow
from bookmark_pipeline.jobs.payloads import (
    IndexPayload,
    JobPayload,
    MaintenancePayload,
    SnapshotPayload,
    parse_payload,
)
from bookmark_pipeline.jobs.policy import DEFAULT_POLICIES, QueuePolicy
from bookmark_pipeline.jobs.types import EnqueueOutcome, JobStatus, QueueName

logger = structlog.get_logger(__name__)

DEFAULT_COMPLETED_RETENTION = timedelta(hours=24)
DEFAULT_FAILED_RETENTION = timedelta(days=7)


def default_job_id(payload: JobPayload) -> str:
    """Snapshot and index jobs are keyed by bookmark; maintenance ids are unique."""
    if isinstance(payload, (SnapshotPayload, IndexPayload)):
        return payload.bookmark_id
    if isinstance(payload, MaintenancePayload):
        scope = payload.owner_id or "all"
        return f"{payload.type.value}-{scope}-{uuid.uuid4().hex[:12]}"
    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")


class JobQueue(ABC):
    """
    Abstract interface for the job broker.

    Current: InMemoryJobQueue (single process), PostgresJobQueue (durable)
    """

    def __init__(
        self,
        policies: Optional[dict[QueueName, QueuePolicy]] = None,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
        failed_retention: timedelta = DEFAULT_FAILED_RETENTION,
    ):
        self._policies = dict(policies or DEFAULT_POLICIES)
        self._completed_retention = completed_retention
        self._failed_retention = failed_retention

    def policy(self, queue: QueueName) -> QueuePolicy:
        return self._policies[QueueName(queue)]

    def _prepare(
        self,
        queue: QueueName,
        payload: Any,
        job_id: Optional[str],
        priority: Optional[int],
    ) -> tuple[QueueName, JobPayload, str, int, QueuePolicy]:
        """Validate and fill defaults for a submission."""
        queue = QueueName(queue)
        parsed = parse_payload(queue, payload)
        policy = self.policy(queue)
        return (
            queue,
            parsed,
            job_id or default_job_id(parsed),
            int(priority if priority is not None else policy.default_priority),
            policy,
        )

    @abstractmethod
    async def enqueue(
        self,
        queue: QueueName,
        payload: Any,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> JobHandle:
        """
        Submit a job.

        Raises:
            PayloadValidationError: If the payload does not match the queue schema
        """
        ...

    @abstractmethod
    async def dequeue(self, queue: QueueName, worker_id: str) -> Optional[Job]:
        """Lease the next eligible job, or None (empty queue or rate limited)."""
        ...

    @abstractmethod
    async def ack(self, job: Job, result: Optional[dict[str, Any]] = None) -> Job:
        """Mark a leased job completed."""
        ...

    @abstractmethod
    async def fail(self, job: Job, error: str, retryable: bool = True) -> Job:
        """Fail a leased job; the broker schedules a retry or fails it terminally."""
        ...

    @abstractmethod
    async def touch(self, job: Job) -> bool:
        """Renew a held lease. Returns False once the lease has been lost."""
        ...

    @abstractmethod
    async def get(self, queue: QueueName, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def stats(self, queue: QueueName) -> QueueStats:
        ...

    @abstractmethod
    async def retry(self, queue: QueueName, job_id: str) -> Job:
        """
        Resubmit a terminally failed job with a fresh retry budget.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is not in ``failed``
        """
        ...

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete completed/failed jobs past their retention window."""
        ...

    @abstractmethod
    async def reap_stale(self, stale_after: timedelta) -> int:
        """Release leases held longer than ``stale_after`` (crashed workers)."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryJobQueue(JobQueue):
    """
    In-memory broker for single-process deployments and tests.

    All state lives in this process; nothing survives a restart. ``clock`` is
    injectable so tests can move time forward past backoff and rate windows.
    """

    def __init__(
        self,
        policies: Optional[dict[QueueName, QueuePolicy]] = None,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
        failed_retention: timedelta = DEFAULT_FAILED_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(policies, completed_retention, failed_retention)
        self._clock = clock
        self._jobs: dict[tuple[QueueName, str], Job] = {}
        self._rate_windows: dict[QueueName, tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        queue: QueueName,
        payload: Any,
        job_id: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> JobHandle:
        queue, parsed, job_id, priority, policy = self._prepare(
            queue, payload, job_id, priority
        )
        now = self._clock()

        async with self._lock:
            existing = self._jobs.get((queue, job_id))
            if existing is not None and not self._replaceable(existing, now):
                logger.info(
                    "job_deduplicated",
                    job_id=job_id,
                    queue=queue.value,
                    status=existing.status.value,
                )
                return JobHandle(
                    id=job_id,
                    queue=queue,
                    outcome=EnqueueOutcome.DEDUPLICATED,
                    status=existing.status,
                )

            self._jobs[(queue, job_id)] = Job(
                id=job_id,
                queue=queue,
                status=JobStatus.WAITING,
                payload=parsed.to_wire(),
                priority=priority,
                max_attempts=policy.max_attempts,
                run_after=now,
                created_at=now,
            )

        logger.info(
            "job_enqueued",
            job_id=job_id,
            queue=queue.value,
            priority=priority,
            resubmitted=existing is not None,
        )
        return JobHandle(
            id=job_id, queue=queue, outcome=EnqueueOutcome.ACCEPTED, status=JobStatus.WAITING
        )

    def _replaceable(self, job: Job, now: datetime) -> bool:
        if job.status == JobStatus.FAILED:
            return True
        return (
            job.status == JobStatus.COMPLETED
            and job.completed_at is not None
            and job.completed_at < now - self._completed_retention
        )

    def _take_rate_slot(self, queue: QueueName, now: datetime) -> bool:
        """Fixed one-second window counter per queue."""
        window = int(now.timestamp())
        start, used = self._rate_windows.get(queue, (window, 0))
        if start != window:
            used = 0
        if used >= self.policy(queue).rate_limit_per_second:
            self._rate_windows[queue] = (window, used)
            return False
        self._rate_windows[queue] = (window, used + 1)
        return True

    async def dequeue(self, queue: QueueName, worker_id: str) -> Optional[Job]:
        queue = QueueName(queue)
        now = self._clock()

        async with self._lock:
            eligible = [
                job
                for (q, _), job in self._jobs.items()
                if q == queue and job.status == JobStatus.WAITING and job.run_after <= now
            ]
            if not eligible:
                return None
            if not self._take_rate_slot(queue, now):
                logger.debug("dequeue_rate_limited", queue=queue.value)
                return None

            job = min(eligible, key=lambda j: (j.priority, j.created_at))
            job.status = JobStatus.ACTIVE
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempt += 1
            claimed = _copy(job)

        logger.info(
            "job_claimed",
            job_id=claimed.id,
            queue=queue.value,
            attempt=claimed.attempt,
            worker_id=worker_id,
        )
        return claimed

    def _leased(self, job: Job) -> Optional[Job]:
        stored = self._jobs.get((job.queue, job.id))
        if stored is None:
            raise JobNotFoundError(job.queue.value, job.id)
        if stored.status != JobStatus.ACTIVE or stored.locked_by != job.locked_by:
            logger.warning(
                "job_lease_lost",
                job_id=job.id,
                queue=job.queue.value,
                worker_id=job.locked_by,
                status=stored.status.value,
            )
            return None
        return stored

    async def ack(self, job: Job, result: Optional[dict[str, Any]] = None) -> Job:
        async with self._lock:
            stored = self._leased(job)
            if stored is None:
                return _copy(self._jobs[(job.queue, job.id)])
            stored.status = JobStatus.COMPLETED
            stored.completed_at = self._clock()
            stored.result = result or {}
            stored.locked_at = None
            stored.locked_by = None
            done = _copy(stored)

        logger.info("job_completed", job_id=job.id, queue=job.queue.value, attempt=job.attempt)
        return done

    async def fail(self, job: Job, error: str, retryable: bool = True) -> Job:
        async with self._lock:
            stored = self._leased(job)
            if stored is None:
                return _copy(self._jobs[(job.queue, job.id)])

            now = self._clock()
            stored.last_error = error
            stored.locked_at = None
            stored.locked_by = None

            if retryable and stored.attempt < stored.max_attempts:
                backoff = self.policy(job.queue).backoff(stored.attempt)
                stored.status = JobStatus.WAITING
                stored.run_after = now + timedelta(seconds=backoff)
                logger.info(
                    "job_retry_scheduled",
                    job_id=job.id,
                    queue=job.queue.value,
                    attempt=stored.attempt,
                    backoff=backoff,
                    error=error,
                )
            else:
                stored.status = JobStatus.FAILED
                stored.completed_at = now
                logger.warning(
                    "job_failed",
                    job_id=job.id,
                    queue=job.queue.value,
                    attempt=stored.attempt,
                    retryable=retryable,
                    error=error,
                )
            return _copy(stored)

    async def touch(self, job: Job) -> bool:
        async with self._lock:
            stored = self._jobs.get((job.queue, job.id))
            if (
                stored is None
                or stored.status != JobStatus.ACTIVE
                or stored.locked_by != job.locked_by
            ):
                return False
            stored.locked_at = self._clock()
            return True

    async def get(self, queue: QueueName, job_id: str) -> Optional[Job]:
        job = self._jobs.get((QueueName(queue), job_id))
        return _copy(job) if job else None

    async def stats(self, queue: QueueName) -> QueueStats:
        queue = QueueName(queue)
        now = self._clock()
        stats = QueueStats(queue=queue)
        for (q, _), job in self._jobs.items():
            if q != queue:
                continue
            if job.status == JobStatus.WAITING:
                stats.waiting += 1
                if job.is_delayed(now):
                    stats.delayed += 1
            elif job.status == JobStatus.ACTIVE:
                stats.active += 1
            elif job.status == JobStatus.COMPLETED:
                stats.completed += 1
            elif job.status == JobStatus.FAILED:
                stats.failed += 1
        return stats

    async def retry(self, queue: QueueName, job_id: str) -> Job:
        queue = QueueName(queue)
        async with self._lock:
            job = self._jobs.get((queue, job_id))
            if job is None:
                raise JobNotFoundError(queue.value, job_id)
            if job.status != JobStatus.FAILED:
                raise JobStateError(
                    f"Job {queue.value}/{job_id} is {job.status.value}, only failed jobs can be retried"
                )
            job.status = JobStatus.WAITING
            job.attempt = 0
            job.run_after = self._clock()
            job.completed_at = None
            job.started_at = None
            retried = _copy(job)

        logger.info("job_resubmitted", job_id=job_id, queue=queue.value)
        return retried

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [
                key
                for key, job in self._jobs.items()
                if job.completed_at is not None
                and (
                    (job.status == JobStatus.COMPLETED
                     and job.completed_at < now - self._completed_retention)
                    or (job.status == JobStatus.FAILED
                        and job.completed_at < now - self._failed_retention)
                )
            ]
            for key in expired:
                del self._jobs[key]

        if expired:
            logger.info("expired_jobs_purged", count=len(expired))
        return len(expired)

    async def reap_stale(self, stale_after: timedelta) -> int:
        now = self._clock()
        reaped = 0
        async with self._lock:
            for job in self._jobs.values():
                if (
                    job.status != JobStatus.ACTIVE
                    or job.locked_at is None
                    or job.locked_at >= now - stale_after
                ):
                    continue
                job.locked_at = None
                job.locked_by = None
                job.last_error = "lease expired"
                if job.attempt < job.max_attempts:
                    job.status = JobStatus.WAITING
                    job.run_after = now
                else:
                    job.status = JobStatus.FAILED
                    job.completed_at = now
                reaped += 1

        if reaped:
            logger.warning("stale_jobs_reaped", count=reaped)
        return reaped


def _copy(job: Job) -> Job:
    """Callers get snapshots; only the broker mutates stored jobs."""
    return Job(**{**job.__dict__, "payload": dict(job.payload)})


_job_queue: Optional[JobQueue] = None


def get_job_queue(pool=None) -> JobQueue:
    """
    Get the singleton broker instance.

    Uses config to determine implementation:
    - memory: InMemoryJobQueue (single process)
    - postgres: PostgresJobQueue (durable, requires an asyncpg pool)

    Raises:
        ValueError: If job_queue_mode=postgres and no pool is given
    """
    global _job_queue
    if _job_queue is None:
        from bookmark_pipeline.config import get_settings
        from bookmark_pipeline.jobs.policy import policies_from_settings

        settings = get_settings()
        kwargs = dict(
            policies=policies_from_settings(settings),
            completed_retention=timedelta(hours=settings.job_completed_retention_hours),
            failed_retention=timedelta(days=settings.job_failed_retention_days),
        )

        if settings.job_queue_mode == "postgres":
            if pool is None:
                raise ValueError(
                    "JOB_QUEUE_MODE=postgres requires a database pool. "
                    "Set DATABASE_URL and create the pool before the broker."
                )
            from bookmark_pipeline.repositories.jobs import PostgresJobQueue

            _job_queue = PostgresJobQueue(pool, **kwargs)
        else:
            _job_queue = InMemoryJobQueue(**kwargs)

        logger.info("job_queue_initialized", mode=settings.job_queue_mode)

    return _job_queue


def set_job_queue(queue: Optional[JobQueue]) -> None:
    """Set the broker instance (for testing or runtime replacement)."""
    global _job_queue
    _job_queue = queue


def reset_job_queue() -> None:
    """Reset the broker singleton (for testing)."""
    global _job_queue
    _job_queue = None
