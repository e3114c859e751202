"""Job system type definitions."""

from enum import Enum, IntEnum


class QueueName(str, Enum):
    """Named queues of the content pipeline."""

    SNAPSHOT = "snapshot"
    INDEX = "index"
    MAINTENANCE = "maintenance"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(IntEnum):
    """Priority tiers. Lower value is dequeued first."""

    HIGH = 1
    NORMAL = 5
    LOW = 10


class EnqueueOutcome(str, Enum):
    """What the broker did with a submission."""

    ACCEPTED = "accepted"
    DEDUPLICATED = "deduplicated"


class MaintenanceKind(str, Enum):
    """Maintenance job kinds sharing the maintenance queue."""

    DUPLICATE_DETECTION = "duplicate-detection"
    BROKEN_LINK_SCAN = "broken-link-scan"
