"""Pipeline error taxonomy.

Every error carries a ``retryable`` flag. The worker runtime hands it to the
broker, which decides between a backoff retry and terminal failure.
"""


class PipelineError(Exception):
    """Base exception for content-pipeline errors."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class PayloadValidationError(PipelineError):
    """Job payload does not match its queue's schema."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message, retryable=False)
        self.errors = errors or []


class PermanentJobError(PipelineError):
    """Handler-signalled failure that no retry can fix."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class BookmarkNotFoundError(PermanentJobError):
    """Bookmark was deleted between enqueue and execution."""

    def __init__(self, bookmark_id: str):
        super().__init__(f"Bookmark {bookmark_id} not found")
        self.bookmark_id = bookmark_id


class PageFetchError(PipelineError):
    """Headless fetch or render failed or timed out."""

    def __init__(self, message: str, url: str | None = None, timed_out: bool = False):
        super().__init__(message, retryable=True)
        self.url = url
        self.timed_out = timed_out


class StorageError(PipelineError):
    """Object storage read or write failed."""


class SnapshotNotFoundError(StorageError):
    """Referenced snapshot object does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Snapshot object not found: {path}", retryable=False)
        self.path = path


class SearchIndexError(PipelineError):
    """Search engine rejected or failed a document operation."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class JobNotFoundError(PipelineError):
    """Broker operation on an unknown job."""

    def __init__(self, queue: str, job_id: str):
        super().__init__(f"Job {queue}/{job_id} not found", retryable=False)
        self.queue = queue
        self.job_id = job_id


class JobStateError(PipelineError):
    """Operation not allowed in the job's current status."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions count as transient I/O failures."""
    if isinstance(error, PipelineError):
        return error.retryable
    return True
