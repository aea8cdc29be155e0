"""Public entry point of the CRM replica sync engine.

SyncOrchestrator fans syncs out across entity types (concurrently, one task
per type), decides which types owe a full sync from sync_metadata, and
offers fire-and-forget triggers for request paths that must not wait on a
refresh. sync_all / sync_all_incremental never raise: every entity type
always gets a SyncResult.

Mutual exclusion is a process-local SyncLock shared by all syncers; the
persisted sync_in_progress flag is informational only.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.config import Settings
from src.app.crm_sync.associations import AssociationResolver
from src.app.crm_sync.client import HubSpotClient
from src.app.crm_sync.entities import ENTITY_SPECS
from src.app.crm_sync.metadata import SyncMetadataStore
from src.app.crm_sync.records import LocalRecordStore
from src.app.crm_sync.runs import SyncRunRepository
from src.app.crm_sync.schemas import (
    EnsureSyncResult,
    EntitySyncStatus,
    EntityType,
    SyncMode,
    SyncResult,
    SyncRunRead,
)
from src.app.crm_sync.syncer import EntitySyncer

logger = structlog.get_logger(__name__)


# ── Concurrency Primitives ──────────────────────────────────────────────────


class SyncLock:
    """Non-blocking, process-local mutual exclusion per entity type."""

    def __init__(self) -> None:
        self._held: set[EntityType] = set()

    def try_acquire(self, entity_type: EntityType) -> bool:
        if entity_type in self._held:
            return False
        self._held.add(entity_type)
        return True

    def release(self, entity_type: EntityType) -> None:
        self._held.discard(entity_type)

    def is_held(self, entity_type: EntityType) -> bool:
        return entity_type in self._held


class BackgroundTasks:
    """Spawns detached asyncio tasks whose failures are still logged.

    Keeps a strong reference to every task until it finishes so the event
    loop cannot garbage-collect it mid-run.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("crm_sync.background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "crm_sync.background_task_failed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait(self) -> None:
        """Wait for every task spawned so far (including ones they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ── Orchestrator ────────────────────────────────────────────────────────────


class SyncOrchestrator:
    """Coordinates entity syncers, staleness policy and background refreshes.

    Args:
        syncers: One EntitySyncer per entity type.
        record_store: Replica store (status counts).
        metadata_store: sync_metadata bookkeeping (staleness).
        runs: Optional run history repository (emergency cancel, listing).
        max_age_hours: Default freshness window.
        background: Task spawner for fire-and-forget triggers.
    """

    def __init__(
        self,
        syncers: dict[EntityType, EntitySyncer],
        record_store: LocalRecordStore,
        metadata_store: SyncMetadataStore,
        *,
        runs: SyncRunRepository | None = None,
        max_age_hours: int = 24,
        background: BackgroundTasks | None = None,
    ) -> None:
        self._syncers = syncers
        self._records = record_store
        self._metadata = metadata_store
        self._runs = runs
        self._max_age_hours = max_age_hours
        self._background = background or BackgroundTasks()

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    def _max_age(self, max_age_hours: int | None) -> timedelta:
        return timedelta(hours=max_age_hours if max_age_hours is not None else self._max_age_hours)

    async def _guarded(
        self,
        entity_type: EntityType,
        mode: SyncMode,
        coro: Coroutine[Any, Any, SyncResult],
    ) -> SyncResult:
        """Await a syncer call, converting anything it raises into a failed result."""
        try:
            return await coro
        except Exception as exc:
            logger.exception(
                "crm_sync.unexpected_error",
                entity_type=entity_type.value,
                mode=mode.value,
            )
            return SyncResult(
                entity_type=entity_type,
                mode=mode,
                success=False,
                error_messages=[str(exc) or type(exc).__name__],
                completed_at=datetime.now(timezone.utc),
            )

    async def _gather(
        self,
        mode: SyncMode,
        calls: dict[EntityType, Coroutine[Any, Any, SyncResult]],
    ) -> dict[EntityType, SyncResult]:
        entity_types = list(calls)
        results = await asyncio.gather(
            *(self._guarded(e, mode, calls[e]) for e in entity_types)
        )
        return dict(zip(entity_types, results))

    # ── Sync Triggers ───────────────────────────────────────────────────────

    async def sync_all(self, limit: int | None = None) -> dict[EntityType, SyncResult]:
        """Full sync of every entity type concurrently; waits for all of them."""
        logger.info("crm_sync.sync_all_started", limit=limit)
        results = await self._gather(
            SyncMode.FULL,
            {e: s.full_sync(limit=limit) for e, s in self._syncers.items()},
        )
        logger.info(
            "crm_sync.sync_all_complete",
            success=all(r.success for r in results.values()),
        )
        return results

    async def sync_all_incremental(
        self, max_age_hours: int | None = None
    ) -> dict[EntityType, SyncResult]:
        """Incremental sync of every entity type concurrently."""
        hours = max_age_hours if max_age_hours is not None else self._max_age_hours
        return await self._gather(
            SyncMode.INCREMENTAL,
            {e: s.incremental_sync(max_age_hours=hours) for e, s in self._syncers.items()},
        )

    async def sync_entity(
        self,
        entity_type: EntityType,
        limit: int | None = None,
        incremental: bool = False,
        max_age_hours: int | None = None,
    ) -> SyncResult:
        """Sync one entity type, full or incremental."""
        syncer = self._syncers[entity_type]
        if incremental:
            hours = max_age_hours if max_age_hours is not None else self._max_age_hours
            return await self._guarded(
                entity_type,
                SyncMode.INCREMENTAL,
                syncer.incremental_sync(max_age_hours=hours, limit=limit),
            )
        return await self._guarded(entity_type, SyncMode.FULL, syncer.full_sync(limit=limit))

    def trigger_incremental_sync(self, max_age_hours: int | None = None) -> None:
        """Start an incremental sync of everything in the background and return."""
        self._background.spawn(
            self.sync_all_incremental(max_age_hours),
            name="crm_sync.incremental",
        )
        logger.info("crm_sync.incremental_triggered")

    async def _sync_full(self, entity_types: list[EntityType]) -> dict[EntityType, SyncResult]:
        return await self._gather(
            SyncMode.FULL,
            {e: self._syncers[e].full_sync() for e in entity_types},
        )

    async def ensure_data_synced(self, max_age_hours: int | None = None) -> EnsureSyncResult:
        """Background full sync for exactly the entity types that are stale.

        Does not wait for the syncs; reports which types were triggered.
        """
        max_age = self._max_age(max_age_hours)
        stale = [
            entity_type
            for entity_type in self._syncers
            if await self._metadata.is_stale(entity_type, max_age)
        ]
        if not stale:
            return EnsureSyncResult(triggered=False, entities=[])

        self._background.spawn(self._sync_full(stale), name="crm_sync.ensure_full")
        logger.info("crm_sync.stale_sync_triggered", entities=[e.value for e in stale])
        return EnsureSyncResult(triggered=True, entities=stale)

    # ── Status / Operations ─────────────────────────────────────────────────

    async def get_sync_status(
        self, max_age_hours: int | None = None
    ) -> dict[EntityType, EntitySyncStatus]:
        return await self._metadata.get_status(self._records, self._max_age(max_age_hours))

    async def cancel_inflight_runs(self) -> int:
        """Emergency: mark every persisted running sync run as cancelled."""
        if self._runs is None:
            logger.warning("crm_sync.cancel_without_run_history")
            return 0
        return await self._runs.cancel_inflight()

    async def list_runs(self, limit: int = 20) -> list[SyncRunRead]:
        if self._runs is None:
            return []
        return await self._runs.list_recent(limit)

    async def aclose(self) -> None:
        """Wait for outstanding background syncs before shutdown."""
        if self._background.pending:
            logger.info("crm_sync.awaiting_background", pending=self._background.pending)
        await self._background.wait()


# ── Factory ─────────────────────────────────────────────────────────────────


def build_orchestrator(
    settings: Settings,
    client: HubSpotClient,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
) -> SyncOrchestrator:
    """Wire stores, lock and one syncer per entity type from settings."""
    record_store = LocalRecordStore(session_factory)
    metadata_store = SyncMetadataStore(session_factory)
    runs = SyncRunRepository(session_factory)
    resolver = AssociationResolver(client)
    lock = SyncLock()
    max_age = timedelta(hours=settings.SYNC_MAX_AGE_HOURS)

    syncers = {}
    for entity_type, spec in ENTITY_SPECS.items():
        batch_size = (
            settings.SYNC_DEAL_BATCH_SIZE if spec.association_types else settings.SYNC_BATCH_SIZE
        )
        syncers[entity_type] = EntitySyncer(
            spec,
            client,
            record_store,
            metadata_store,
            lock,
            resolver=resolver,
            runs=runs,
            page_size=settings.SYNC_PAGE_SIZE,
            batch_size=batch_size,
            max_age=max_age,
        )

    return SyncOrchestrator(
        syncers,
        record_store,
        metadata_store,
        runs=runs,
        max_age_hours=settings.SYNC_MAX_AGE_HOURS,
    )
