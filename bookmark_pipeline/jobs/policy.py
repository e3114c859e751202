"""Per-queue retry, concurrency and rate-limit policy."""

from dataclasses import dataclass

from bookmark_pipeline.config import Settings
from bookmark_pipeline.jobs.types import JobPriority, QueueName

DEFAULT_BACKOFF_BASE_S = 2.0
DEFAULT_BACKOFF_MAX_S = 300.0


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE_S,
    cap: float = DEFAULT_BACKOFF_MAX_S,
) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-indexed).

    base * 2^(attempt-1), bounded by ``cap``. No jitter, so the delay
    between attempt n and n+1 is exactly predictable.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(cap, base * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class QueuePolicy:
    """Operational limits for one queue."""

    queue: QueueName
    max_attempts: int
    concurrency: int
    default_priority: JobPriority
    rate_limit_per_second: int = 10
    backoff_base_s: float = DEFAULT_BACKOFF_BASE_S
    backoff_max_s: float = DEFAULT_BACKOFF_MAX_S

    def backoff(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff_base_s, self.backoff_max_s)


DEFAULT_POLICIES: dict[QueueName, QueuePolicy] = {
    QueueName.SNAPSHOT: QueuePolicy(
        queue=QueueName.SNAPSHOT,
        max_attempts=3,
        concurrency=5,
        default_priority=JobPriority.NORMAL,
    ),
    QueueName.INDEX: QueuePolicy(
        queue=QueueName.INDEX,
        max_attempts=3,
        concurrency=5,
        default_priority=JobPriority.NORMAL,
    ),
    QueueName.MAINTENANCE: QueuePolicy(
        queue=QueueName.MAINTENANCE,
        max_attempts=2,
        concurrency=3,
        default_priority=JobPriority.LOW,
    ),
}


def policies_from_settings(settings: Settings) -> dict[QueueName, QueuePolicy]:
    """Build the policy table with operator overrides applied."""
    concurrency = {
        QueueName.SNAPSHOT: settings.snapshot_concurrency,
        QueueName.INDEX: settings.index_concurrency,
        QueueName.MAINTENANCE: settings.maintenance_concurrency,
    }
    return {
        queue: QueuePolicy(
            queue=queue,
            max_attempts=default.max_attempts,
            concurrency=concurrency[queue],
            default_priority=default.default_priority,
            rate_limit_per_second=settings.job_rate_limit_per_second,
            backoff_base_s=settings.job_backoff_base_s,
            backoff_max_s=settings.job_backoff_max_s,
        )
        for queue, default in DEFAULT_POLICIES.items()
    }
