"""Stage handler registry."""

from typing import Any, Callable, Coroutine

from bookmark_pipeline.jobs.models import Job, StageResult
from bookmark_pipeline.jobs.types import QueueName

# Handler signature: async def handler(job: Job, payload, ctx: dict) -> StageResult
StageHandler = Callable[[Job, Any, dict[str, Any]], Coroutine[Any, Any, StageResult]]


class JobRegistry:
    """Registry mapping queues to their stage handlers."""

    def __init__(self):
        self._handlers: dict[QueueName, StageHandler] = {}

    def register(self, queue: QueueName, handler: StageHandler) -> None:
        """Register a handler for a queue."""
        self._handlers[queue] = handler

    def get_handler(self, queue: QueueName) -> StageHandler:
        """Get the handler for a queue. Raises KeyError if not found."""
        if queue not in self._handlers:
            raise KeyError(f"No handler registered for queue: {queue.value}")
        return self._handlers[queue]

    def handler(self, queue: QueueName) -> Callable[[StageHandler], StageHandler]:
        """Decorator to register a handler."""

        def decorator(fn: StageHandler) -> StageHandler:
            self.register(queue, fn)
            return fn

        return decorator

    @property
    def queues(self) -> list[QueueName]:
        return list(self._handlers)


# Global registry instance
default_registry = JobRegistry()
