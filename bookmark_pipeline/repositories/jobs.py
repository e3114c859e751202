"""Postgres-backed job queue."""

import json
from datetime import timedelta
from typing import Any, Optional

import structlog

from bookmark_pipeline.core.errors import JobNotFoundError, JobStateError
from bookmark_pipeline.jobs.broker import (
    DEFAULT_COMPLETED_RETENTION,
    DEFAULT_FAILED_RETENTION,
    JobQueue,
)
from bookmark_pipeline.jobs.models import Job, JobHandle, QueueStats
from bookmark_pipeline.jobs.policy import QueuePolicy
from bookmark_pipeline.jobs.types import EnqueueOutcome, JobStatus, QueueName
from bookmark_pipeline.repositories.utils import ensure_json

logger = structlog.get_logger(__name__)

# Inserts a new job, or revives a terminally failed / expired completed one.
# A conflicting row that is still outstanding returns nothing (deduplicated).
_ENQUEUE_SQL = """
    INSERT INTO jobs (queue, id, payload, priority, max_attempts)
    VALUES ($1, $2, $3::jsonb, $4, $5)
    ON CONFLICT (queue, id) DO UPDATE SET
        status = 'waiting',
        payload = EXCLUDED.payload,
        priority = EXCLUDED.priority,
        max_attempts = EXCLUDED.max_attempts,
        attempt = 0,
        run_after = now(),
        locked_at = NULL,
        locked_by = NULL,
        created_at = now(),
        started_at = NULL,
        completed_at = NULL,
        result = NULL,
        last_error = NULL
    WHERE jobs.status = 'failed'
       OR (jobs.status = 'completed' AND jobs.completed_at < now() - $6::interval)
    RETURNING *
"""

# Fixed one-second window shared by every replica. The upsert takes the row
# lock, so concurrent claimers on the same queue serialize here.
_RATE_WINDOW_SQL = """
    INSERT INTO job_queue_rate AS r (queue, window_start, used)
    VALUES ($1, date_trunc('second', clock_timestamp()), 0)
    ON CONFLICT (queue) DO UPDATE SET
        window_start = EXCLUDED.window_start,
        used = CASE WHEN r.window_start = EXCLUDED.window_start THEN r.used ELSE 0 END
    RETURNING used
"""

_CLAIM_SQL = """
    WITH cte AS (
        SELECT id FROM jobs
        WHERE queue = $1 AND status = 'waiting' AND run_after <= now()
        ORDER BY priority, created_at
        FOR UPDATE SKIP LOCKED
        LIMIT 1
    )
    UPDATE jobs j SET
        status = 'active',
        locked_at = now(),
        locked_by = $2,
        started_at = now(),
        attempt = j.attempt + 1
    FROM cte
    WHERE j.queue = $1 AND j.id = cte.id
    RETURNING j.*
"""


class PostgresJobQueue(JobQueue):
    """Durable broker for multi-replica deployments."""

    def __init__(
        self,
        pool,
        policies: Optional[dict[QueueName, QueuePolicy]] = None,
        completed_retention: timedelta = DEFAULT_COMPLETED_RETENTION,
        failed_retention: timedelta = DEFAULT_FAILED_RETENTION,
    ):
        super().__init__(policies, completed_retention, failed_retention)
        self._pool = pool

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
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _ENQUEUE_SQL,
                queue.value,
                job_id,
                json.dumps(parsed.to_wire()),
                priority,
                policy.max_attempts,
                self._completed_retention,
            )
            if row is None:
                existing = await conn.fetchrow(
                    "SELECT status FROM jobs WHERE queue = $1 AND id = $2",
                    queue.value,
                    job_id,
                )

        if row is not None:
            logger.info("job_enqueued", job_id=job_id, queue=queue.value, priority=priority)
            return JobHandle(
                id=job_id, queue=queue, outcome=EnqueueOutcome.ACCEPTED, status=JobStatus.WAITING
            )

        # Purged between the insert and the read; a retry will insert cleanly.
        status = JobStatus(existing["status"]) if existing else JobStatus.WAITING
        logger.info(
            "job_deduplicated", job_id=job_id, queue=queue.value, status=status.value
        )
        return JobHandle(
            id=job_id, queue=queue, outcome=EnqueueOutcome.DEDUPLICATED, status=status
        )

    async def dequeue(self, queue: QueueName, worker_id: str) -> Optional[Job]:
        """Claim the next eligible job using FOR UPDATE SKIP LOCKED.

        The claim and the rate-window increment commit together, so a
        rate-limited or empty poll leaves no trace.
        """
        queue = QueueName(queue)
        limit = self.policy(queue).rate_limit_per_second

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                used = await conn.fetchval(_RATE_WINDOW_SQL, queue.value)
                if used >= limit:
                    logger.debug("dequeue_rate_limited", queue=queue.value, used=used)
                    return None

                row = await conn.fetchrow(_CLAIM_SQL, queue.value, worker_id)
                if row is None:
                    return None

                await conn.execute(
                    "UPDATE job_queue_rate SET used = used + 1 WHERE queue = $1",
                    queue.value,
                )

        logger.info(
            "job_claimed",
            job_id=row["id"],
            queue=queue.value,
            attempt=row["attempt"],
            worker_id=worker_id,
        )
        return self._row_to_job(row)

    async def ack(self, job: Job, result: Optional[dict[str, Any]] = None) -> Job:
        """Mark a leased job completed."""
        query = """
            UPDATE jobs SET
                status = 'completed',
                result = $4::jsonb,
                completed_at = now(),
                locked_at = NULL,
                locked_by = NULL
            WHERE queue = $1 AND id = $2 AND status = 'active' AND locked_by = $3
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job.queue.value, job.id, job.locked_by, json.dumps(result or {})
            )
        if row is None:
            return await self._lease_lost(job)

        logger.info("job_completed", job_id=job.id, queue=job.queue.value, attempt=job.attempt)
        return self._row_to_job(row)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> Job:
        """Mark a leased job failed, scheduling a retry if budget remains."""
        if retryable and job.attempt < job.max_attempts:
            backoff = self.policy(job.queue).backoff(job.attempt)
            query = """
                UPDATE jobs SET
                    status = 'waiting',
                    locked_at = NULL,
                    locked_by = NULL,
                    run_after = now() + $5::interval,
                    last_error = $4
                WHERE queue = $1 AND id = $2 AND status = 'active' AND locked_by = $3
                RETURNING *
            """
            params = [timedelta(seconds=backoff)]
        else:
            backoff = None
            query = """
                UPDATE jobs SET
                    status = 'failed',
                    completed_at = now(),
                    locked_at = NULL,
                    locked_by = NULL,
                    last_error = $4
                WHERE queue = $1 AND id = $2 AND status = 'active' AND locked_by = $3
                RETURNING *
            """
            params = []

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job.queue.value, job.id, job.locked_by, error, *params
            )
        if row is None:
            return await self._lease_lost(job)

        if backoff is not None:
            logger.info(
                "job_retry_scheduled",
                job_id=job.id,
                queue=job.queue.value,
                attempt=job.attempt,
                backoff=backoff,
                error=error,
            )
        else:
            logger.warning(
                "job_failed",
                job_id=job.id,
                queue=job.queue.value,
                attempt=job.attempt,
                retryable=retryable,
                error=error,
            )
        return self._row_to_job(row)

    async def touch(self, job: Job) -> bool:
        """Refresh ``locked_at`` while the caller still holds the lease."""
        query = """
            UPDATE jobs SET locked_at = now()
            WHERE queue = $1 AND id = $2 AND status = 'active' AND locked_by = $3
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.queue.value, job.id, job.locked_by)
        return row is not None

    async def _lease_lost(self, job: Job) -> Job:
        current = await self.get(job.queue, job.id)
        if current is None:
            raise JobNotFoundError(job.queue.value, job.id)
        logger.warning(
            "job_lease_lost",
            job_id=job.id,
            queue=job.queue.value,
            worker_id=job.locked_by,
            status=current.status.value,
        )
        return current

    async def get(self, queue: QueueName, job_id: str) -> Optional[Job]:
        """Get a job by queue and id."""
        query = "SELECT * FROM jobs WHERE queue = $1 AND id = $2"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, QueueName(queue).value, job_id)
        return self._row_to_job(row) if row else None

    async def stats(self, queue: QueueName) -> QueueStats:
        query = """
            SELECT
                COUNT(*) FILTER (WHERE status = 'waiting') AS waiting,
                COUNT(*) FILTER (WHERE status = 'active') AS active,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COUNT(*) FILTER (WHERE status = 'waiting' AND run_after > now()) AS delayed
            FROM jobs
            WHERE queue = $1
        """
        queue = QueueName(queue)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, queue.value)
        return QueueStats(
            queue=queue,
            waiting=row["waiting"],
            active=row["active"],
            completed=row["completed"],
            failed=row["failed"],
            delayed=row["delayed"],
        )

    async def retry(self, queue: QueueName, job_id: str) -> Job:
        queue = QueueName(queue)
        query = """
            UPDATE jobs SET
                status = 'waiting',
                attempt = 0,
                run_after = now(),
                started_at = NULL,
                completed_at = NULL
            WHERE queue = $1 AND id = $2 AND status = 'failed'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, queue.value, job_id)
            if row is None:
                current = await conn.fetchrow(
                    "SELECT status FROM jobs WHERE queue = $1 AND id = $2",
                    queue.value,
                    job_id,
                )
        if row is None:
            if current is None:
                raise JobNotFoundError(queue.value, job_id)
            raise JobStateError(
                f"Job {queue.value}/{job_id} is {current['status']}, only failed jobs can be retried"
            )

        logger.info("job_resubmitted", job_id=job_id, queue=queue.value)
        return self._row_to_job(row)

    async def purge_expired(self) -> int:
        query = """
            DELETE FROM jobs
            WHERE (status = 'completed' AND completed_at < now() - $1::interval)
               OR (status = 'failed' AND completed_at < now() - $2::interval)
            RETURNING queue
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                query, self._completed_retention, self._failed_retention
            )
        count = len(rows)
        if count > 0:
            logger.info("expired_jobs_purged", count=count)
        return count

    async def reap_stale(self, stale_after: timedelta) -> int:
        """Return stale leases to waiting, or fail them when the budget is spent."""
        query = """
            UPDATE jobs SET
                status = CASE WHEN attempt < max_attempts THEN 'waiting' ELSE 'failed' END,
                completed_at = CASE WHEN attempt < max_attempts THEN NULL ELSE now() END,
                run_after = now(),
                locked_at = NULL,
                locked_by = NULL,
                last_error = 'lease expired'
            WHERE status = 'active'
              AND locked_at < now() - $1::interval
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, stale_after)
        count = len(rows)
        if count > 0:
            logger.warning("stale_jobs_reaped", count=count)
        return count

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            queue=QueueName(row["queue"]),
            status=JobStatus(row["status"]),
            payload=ensure_json(row["payload"]) or {},
            priority=row["priority"],
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            run_after=row["run_after"],
            locked_at=row["locked_at"],
            locked_by=row["locked_by"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=ensure_json(row["result"]),
            last_error=row["last_error"],
        )
