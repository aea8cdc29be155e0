"""Sync run history -- one persisted row per sync attempt.

Each attempt that gets past the in-process lock opens a running row and
closes it with its outcome. cancel_inflight() is the operational escape
hatch: it flips every still-running row to cancelled and clears the
advisory in-progress flags in sync_metadata, working directly against the
persisted records rather than through a syncer.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.crm_sync.models import SyncMetadataModel, SyncRunModel
from src.app.crm_sync.records import as_utc
from src.app.crm_sync.schemas import (
    EntityType,
    SyncMode,
    SyncResult,
    SyncRunRead,
    SyncRunStatus,
)

logger = structlog.get_logger(__name__)


def _model_to_run(model: SyncRunModel) -> SyncRunRead:
    return SyncRunRead(
        id=model.id,
        entity_type=EntityType(model.entity_type),
        mode=SyncMode(model.mode),
        status=SyncRunStatus(model.status),
        started_at=as_utc(model.started_at),
        completed_at=as_utc(model.completed_at),
        inserted=model.inserted,
        modified=model.modified,
        errors=model.errors,
        total_records=model.total_records,
        error_message=model.error_message,
    )


class SyncRunRepository:
    """Persists sync attempts to the sync_runs table.

    Args:
        session_factory: Callable returning an async generator of AsyncSession.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def start(self, entity_type: EntityType, mode: SyncMode) -> int:
        """Open a running row and return its id."""
        async for session in self._session_factory():
            model = SyncRunModel(
                entity_type=entity_type.value,
                mode=mode.value,
                status=SyncRunStatus.RUNNING.value,
                started_at=datetime.now(timezone.utc),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return model.id

    async def finish(self, run_id: int, result: SyncResult) -> None:
        """Close a run with the result's counts.

        A run that was cancelled while in flight keeps its cancelled status.
        """
        status = SyncRunStatus.COMPLETE if result.success else SyncRunStatus.ERROR
        async for session in self._session_factory():
            stmt = (
                update(SyncRunModel)
                .where(
                    SyncRunModel.id == run_id,
                    SyncRunModel.status == SyncRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    completed_at=result.completed_at or datetime.now(timezone.utc),
                    inserted=result.inserted,
                    modified=result.modified,
                    errors=result.errors,
                    total_records=result.total_records,
                    error_message="; ".join(result.error_messages) or None,
                )
            )
            await session.execute(stmt)
            await session.commit()

    async def cancel_inflight(self) -> int:
        """Mark every running run cancelled and clear persisted in-progress flags.

        Returns:
            Number of runs cancelled.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRunModel)
                .where(SyncRunModel.status == SyncRunStatus.RUNNING.value)
                .values(
                    status=SyncRunStatus.CANCELLED.value,
                    completed_at=now,
                    error_message="Cancelled by operator",
                )
            )
            await session.execute(
                update(SyncMetadataModel)
                .where(SyncMetadataModel.sync_in_progress.is_(True))
                .values(sync_in_progress=False)
            )
            await session.commit()
            cancelled = result.rowcount or 0

        logger.warning("crm_sync.runs_cancelled", count=cancelled)
        return cancelled

    async def list_recent(self, limit: int = 20) -> list[SyncRunRead]:
        """Newest runs first."""
        async for session in self._session_factory():
            stmt = (
                select(SyncRunModel)
                .order_by(SyncRunModel.started_at.desc(), SyncRunModel.id.desc())
                .limit(limit)
            )
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_run(m) for m in models]
