"""Periodic maintenance scheduling.

Submits all-owner duplicate-detection and broken-link-scan jobs on a fixed
interval. Maintenance ids are generated per submission, so every tick
produces new jobs; the scans themselves are idempotent.
"""

import asyncio
from typing import Optional

import structlog

from bookmark_pipeline.jobs.broker import JobQueue
from bookmark_pipeline.jobs.models import JobHandle
from bookmark_pipeline.jobs.payloads import MaintenancePayload
from bookmark_pipeline.jobs.types import MaintenanceKind, QueueName
from bookmark_pipeline.routers.metrics import record_enqueue

logger = structlog.get_logger(__name__)


class MaintenanceScheduler:
    """Background task enqueueing maintenance scans every ``interval_s``."""

    def __init__(
        self,
        broker: JobQueue,
        interval_s: float,
        kinds: tuple[MaintenanceKind, ...] = tuple(MaintenanceKind),
    ):
        self._broker = broker
        self.interval_s = interval_s
        self.kinds = kinds
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduling task. An interval <= 0 disables scheduling."""
        if self._running:
            logger.warning("maintenance_scheduler_already_running")
            return

        if self.interval_s <= 0:
            logger.info("maintenance_scheduler_disabled")
            return

        logger.info(
            "maintenance_scheduler_started",
            interval_s=self.interval_s,
            kinds=[k.value for k in self.kinds],
        )
        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self, timeout: float = 10.0) -> None:
        if not self._running:
            return

        self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("maintenance_scheduler_stop_timeout")
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)

        self._task = None
        self._running = False
        logger.info("maintenance_scheduler_stopped")

    async def wait(self) -> None:
        """Block until the scheduler stops."""
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)

    async def run_once(self, owner_id: Optional[str] = None) -> list[JobHandle]:
        """Submit one job per maintenance kind."""
        handles = []
        for kind in self.kinds:
            handle = await self._broker.enqueue(
                QueueName.MAINTENANCE, MaintenancePayload(type=kind, owner_id=owner_id)
            )
            record_enqueue(handle.queue.value, handle.outcome.value)
            handles.append(handle)
        self.ticks += 1
        logger.info(
            "maintenance_jobs_scheduled",
            owner_id=owner_id,
            job_ids=[h.id for h in handles],
        )
        return handles

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("maintenance_schedule_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
