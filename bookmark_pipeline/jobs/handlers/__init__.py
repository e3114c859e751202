"""Stage handlers package.

Handlers are registered with the default_registry and called by the worker.

Usage:
    # Import handlers to register them with the registry
    import bookmark_pipeline.jobs.handlers  # noqa: F401

Handler contract:
    async def handle_<queue>(job: Job, payload, ctx: dict) -> StageResult:
        - job: The leased Job (id, attempt, raw payload)
        - payload: The validated payload model for the job's queue
        - ctx: Context dict with bookmarks, storage, search, browser,
          link_checker and settings (only what the stage needs is required)
        - Returns: StageResult; the worker applies its mutation, submits its
          follow-up job, then acks with its result
"""

# Import handlers to trigger registration
from bookmark_pipeline.jobs.handlers import index  # noqa: F401
from bookmark_pipeline.jobs.handlers import maintenance  # noqa: F401
from bookmark_pipeline.jobs.handlers import snapshot  # noqa: F401

__all__ = ["index", "maintenance", "snapshot"]
