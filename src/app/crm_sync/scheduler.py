"""Periodic background refresh of the CRM replica.

Each tick asks the orchestrator to full-sync whatever is stale and then
triggers an incremental sync of everything. Both calls return immediately;
entity types already being synced are skipped by the sync lock. The tick
itself is a plain coroutine so tests can run it directly.
"""

from __future__ import annotations

import asyncio

import structlog

from src.app.crm_sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger(__name__)


class SyncScheduler:
    """asyncio loop that refreshes the replica every ``interval_seconds``."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_seconds: int = 15 * 60,
        max_age_hours: int | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._max_age_hours = max_age_hours
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        """One refresh tick: stale full syncs, then an incremental sweep."""
        ensured = await self._orchestrator.ensure_data_synced(self._max_age_hours)
        self._orchestrator.trigger_incremental_sync(self._max_age_hours)
        logger.info(
            "scheduler.crm_sync_tick",
            full_sync_triggered=ensured.triggered,
            entities=[e.value for e in ensured.entities],
        )

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("scheduler.task_cancelled", task="crm_sync")
                break
            except Exception:
                logger.warning("scheduler.task_loop_error", task="crm_sync", exc_info=True)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="crm_sync_scheduler")
        logger.info("scheduler.background_tasks_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
