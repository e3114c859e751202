"""Worker pool - leases jobs from one queue and runs their stage handlers."""

import asyncio
import inspect
import os
import signal
import socket
import time
import traceback
from datetime import timedelta
from typing import Any, Optional

import structlog

from bookmark_pipeline import __version__
from bookmark_pipeline.core.errors import (
    BookmarkNotFoundError,
    PermanentJobError,
    is_retryable,
)
from bookmark_pipeline.jobs.broker import JobQueue
from bookmark_pipeline.jobs.models import Job, StageResult
from bookmark_pipeline.jobs.payloads import parse_payload
from bookmark_pipeline.jobs.registry import JobRegistry, default_registry
from bookmark_pipeline.jobs.types import QueueName
from bookmark_pipeline.routers.metrics import (
    JOBS_IN_FLIGHT,
    record_enqueue,
    record_job,
    set_queue_stats,
)

logger = structlog.get_logger(__name__)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:
    """
    A bounded pool of executors pulling from one queue.

    Each executor loops dequeue -> handler -> mutation -> follow-up enqueue ->
    ack. While a handler runs, its lease is renewed every
    ``lease_renew_interval`` seconds (default a third of ``stale_after``), so
    housekeeping only reclaims jobs whose worker is gone. A job's exception is
    caught and reported to the broker as a failure; it never stops the
    executor. A housekeeping task releases stale leases and purges expired
    jobs.

    ``ctx`` is passed to every handler. Values with an async ``close()``
    (browser, storage, search and link-checker clients) are closed by
    ``run()`` after shutdown.
    """

    def __init__(
        self,
        queue: QueueName,
        broker: JobQueue,
        ctx: dict[str, Any],
        concurrency: Optional[int] = None,
        registry: JobRegistry = default_registry,
        worker_id: Optional[str] = None,
        poll_interval: float = 1.0,
        stale_after: timedelta = timedelta(minutes=10),
        lease_renew_interval: Optional[float] = None,
        housekeeping_interval: float = 60.0,
        shutdown_timeout: float = 60.0,
    ):
        self.queue = QueueName(queue)
        self._broker = broker
        self._ctx = ctx
        self._registry = registry
        self._worker_id = worker_id or generate_worker_id()
        self.concurrency = concurrency or broker.policy(self.queue).concurrency
        self._poll_interval = poll_interval
        self._stale_after = stale_after
        self._lease_renew_interval = (
            lease_renew_interval
            if lease_renew_interval is not None
            else stale_after.total_seconds() / 3
        )
        self._housekeeping_interval = housekeeping_interval
        self._shutdown_timeout = shutdown_timeout

        self._stop_event = asyncio.Event()
        self._executors: list[asyncio.Task] = []
        self._housekeeping: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_settings(
        cls, queue: QueueName, broker: JobQueue, ctx: dict[str, Any], settings
    ) -> "WorkerPool":
        concurrency = {
            QueueName.SNAPSHOT: settings.snapshot_concurrency,
            QueueName.INDEX: settings.index_concurrency,
            QueueName.MAINTENANCE: settings.maintenance_concurrency,
        }[QueueName(queue)]
        return cls(
            queue,
            broker,
            ctx,
            concurrency=concurrency,
            poll_interval=settings.job_poll_interval_s,
            stale_after=timedelta(minutes=settings.job_stale_timeout_minutes),
            shutdown_timeout=settings.job_shutdown_timeout_s,
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the executors and the housekeeping task."""
        if self._running:
            logger.warning("worker_pool_already_running", queue=self.queue.value)
            return

        self._stop_event.clear()
        self._running = True
        self._executors = [
            asyncio.create_task(self._executor_loop(f"{self._worker_id}:{slot}"))
            for slot in range(self.concurrency)
        ]
        self._housekeeping = asyncio.create_task(self._housekeeping_loop())

        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            queue=self.queue.value,
            concurrency=self.concurrency,
            version=__version__,
        )

    def request_stop(self) -> None:
        """Stop pulling new jobs. Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("worker_stop_requested", queue=self.queue.value)
        self._stop_event.set()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop gracefully: no new leases, in-flight jobs get ``timeout`` seconds
        to finish, then remaining executors are cancelled.
        """
        if not self._running:
            return

        self.request_stop()
        timeout = self._shutdown_timeout if timeout is None else timeout

        if self._housekeeping:
            self._housekeeping.cancel()

        if self._executors:
            _, pending = await asyncio.wait(self._executors, timeout=timeout)
            if pending:
                logger.warning(
                    "worker_stop_timeout",
                    queue=self.queue.value,
                    cancelled=len(pending),
                    timeout=timeout,
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._housekeeping:
            await asyncio.gather(self._housekeeping, return_exceptions=True)

        self._executors = []
        self._housekeeping = None
        self._running = False
        logger.info("worker_stopped", worker_id=self._worker_id, queue=self.queue.value)

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM (or ``request_stop``), then release resources."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                logger.warning("signal_handlers_unsupported", signal=str(sig))

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
            await self.close_resources()

    async def close_resources(self) -> None:
        for name, resource in self._ctx.items():
            close = getattr(resource, "close", None)
            if close is None or not inspect.iscoroutinefunction(close):
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("resource_close_failed", resource=name, error=str(e))

    async def run_once(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Lease and process at most one job. Returns the job's final state."""
        job = await self._broker.dequeue(self.queue, worker_id or self._worker_id)
        if job is None:
            return None
        return await self.process(job)

    async def _executor_loop(self, executor_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                job = await self._broker.dequeue(self.queue, executor_id)
                if job is None:
                    await self._idle()
                    continue
                await self.process(job)
            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker_id=executor_id)
                raise
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    worker_id=executor_id,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
                await self._idle()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass

    async def process(self, job: Job) -> Job:
        """Execute one leased job and report the outcome to the broker."""
        log = logger.bind(job_id=job.id, queue=job.queue.value, attempt=job.attempt)
        log.info("job_executing")
        started = time.monotonic()
        JOBS_IN_FLIGHT.labels(queue=job.queue.value).inc()

        try:
            result = await self._execute_leased(job)
        except Exception as e:
            retryable = is_retryable(e)
            error = f"{type(e).__name__}: {e}"
            log.error("job_handler_failed", error=error, retryable=retryable)
            final = await self._broker.fail(job, error, retryable=retryable)
            outcome = "failed" if final.status.is_terminal else "retry"
        else:
            final = await self._broker.ack(job, result.result)
            outcome = "completed"
            log.info("job_succeeded")
        finally:
            JOBS_IN_FLIGHT.labels(queue=job.queue.value).dec()

        record_job(job.queue.value, outcome, time.monotonic() - started)
        return final

    async def _execute_leased(self, job: Job) -> StageResult:
        heartbeat = asyncio.create_task(self._renew_lease(job))
        try:
            return await self._execute(job)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _renew_lease(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self._lease_renew_interval)
            try:
                renewed = await self._broker.touch(job)
            except Exception as e:
                logger.warning(
                    "job_lease_renew_error", job_id=job.id, queue=job.queue.value, error=str(e)
                )
                continue
            if not renewed:
                logger.warning(
                    "job_lease_renew_lost",
                    job_id=job.id,
                    queue=job.queue.value,
                    worker_id=job.locked_by,
                )
                return

    async def _execute(self, job: Job) -> StageResult:
        try:
            handler = self._registry.get_handler(job.queue)
        except KeyError as e:
            raise PermanentJobError(str(e)) from e

        payload = parse_payload(job.queue, job.payload)
        result = await handler(job, payload, self._ctx)

        # Bookmark writes happen only after the whole stage succeeded.
        if result.mutation is not None and not result.mutation.is_empty:
            if not await self._ctx["bookmarks"].apply(result.mutation):
                raise BookmarkNotFoundError(result.mutation.bookmark_id)

        if result.next_job is not None:
            request = result.next_job
            handle = await self._broker.enqueue(
                request.queue,
                request.payload,
                job_id=request.job_id,
                priority=request.priority,
            )
            record_enqueue(handle.queue.value, handle.outcome.value)
            result.result.setdefault("next_job", {"queue": handle.queue.value, "id": handle.id})

        return result

    async def _housekeeping_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.housekeeping()
            except Exception as e:
                logger.error("worker_housekeeping_error", queue=self.queue.value, error=str(e))
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._housekeeping_interval
                )
            except asyncio.TimeoutError:
                pass

    async def housekeeping(self) -> None:
        """Release stale leases, purge expired jobs, refresh queue gauges."""
        await self._broker.reap_stale(self._stale_after)
        await self._broker.purge_expired()
        set_queue_stats(await self._broker.stats(self.queue))
