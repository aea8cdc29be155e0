"""Per-entity-type sync bookkeeping (sync_metadata table).

Rows are created lazily on the first write for an entity type and are
never deleted. The only writer for a given entity type is the syncer that
holds that type's in-process lock, so upserts are plain read-then-write.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.crm_sync.models import SyncMetadataModel
from src.app.crm_sync.records import as_utc
from src.app.crm_sync.schemas import EntitySyncStatus, EntityType, SyncMetadataRead

if TYPE_CHECKING:
    from src.app.crm_sync.records import LocalRecordStore

logger = structlog.get_logger(__name__)


def _model_to_read(model: SyncMetadataModel) -> SyncMetadataRead:
    return SyncMetadataRead(
        entity_type=EntityType(model.entity_type),
        last_full_sync_at=as_utc(model.last_full_sync_at),
        last_incremental_sync_at=as_utc(model.last_incremental_sync_at),
        sync_in_progress=model.sync_in_progress,
        total_records=model.total_records,
        last_sync_error=model.last_sync_error,
    )


class SyncMetadataStore:
    """Reads and writes sync_metadata rows.

    Args:
        session_factory: Callable returning an async generator of AsyncSession.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def _load_or_create(
        self, session: AsyncSession, entity_type: EntityType
    ) -> SyncMetadataModel:
        stmt = select(SyncMetadataModel).where(
            SyncMetadataModel.entity_type == entity_type.value
        )
        model = (await session.execute(stmt)).scalar_one_or_none()
        if model is None:
            model = SyncMetadataModel(
                entity_type=entity_type.value,
                sync_in_progress=False,
                total_records=0,
            )
            session.add(model)
        return model

    async def get(self, entity_type: EntityType) -> SyncMetadataRead | None:
        async for session in self._session_factory():
            stmt = select(SyncMetadataModel).where(
                SyncMetadataModel.entity_type == entity_type.value
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            return _model_to_read(model)

    async def is_stale(self, entity_type: EntityType, max_age: timedelta) -> bool:
        """True when the entity type has never completed an unlimited full sync
        or the last one is older than max_age."""
        metadata = await self.get(entity_type)
        if metadata is None or metadata.last_full_sync_at is None:
            return True
        return datetime.now(timezone.utc) - metadata.last_full_sync_at > max_age

    async def mark_in_progress(self, entity_type: EntityType) -> None:
        async for session in self._session_factory():
            model = await self._load_or_create(session, entity_type)
            model.sync_in_progress = True
            await session.commit()

    async def mark_complete(
        self,
        entity_type: EntityType,
        *,
        is_full_sync: bool,
        total_records: int | None = None,
    ) -> None:
        """Record a successful run.

        Always stamps last_incremental_sync_at and clears the in-progress flag
        and last error. last_full_sync_at moves only for a full sync.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = await self._load_or_create(session, entity_type)
            model.last_incremental_sync_at = now
            if is_full_sync:
                model.last_full_sync_at = now
            if total_records is not None:
                model.total_records = total_records
            model.sync_in_progress = False
            model.last_sync_error = None
            await session.commit()

        logger.info(
            "crm_sync.metadata_complete",
            entity_type=entity_type.value,
            is_full_sync=is_full_sync,
            total_records=total_records,
        )

    async def mark_failed(self, entity_type: EntityType, error: str) -> None:
        """Record a failed run; sync timestamps are left as they were."""
        async for session in self._session_factory():
            model = await self._load_or_create(session, entity_type)
            model.sync_in_progress = False
            model.last_sync_error = error
            await session.commit()

    async def get_status(
        self,
        record_store: LocalRecordStore,
        max_age: timedelta,
    ) -> dict[EntityType, EntitySyncStatus]:
        """Status for all three entity types with live counts from the replica."""
        status: dict[EntityType, EntitySyncStatus] = {}
        now = datetime.now(timezone.utc)
        for entity_type in EntityType:
            metadata = await self.get(entity_type)
            last_full = metadata.last_full_sync_at if metadata else None
            status[entity_type] = EntitySyncStatus(
                entity_type=entity_type,
                last_full_sync=last_full,
                total_records=await record_store.count(entity_type),
                needs_sync=last_full is None or now - last_full > max_age,
                status=await record_store.count_by_status(entity_type),
                last_synced_at=await record_store.latest_synced_at(entity_type),
                last_incremental_sync_at=(
                    metadata.last_incremental_sync_at if metadata else None
                ),
                sync_in_progress=metadata.sync_in_progress if metadata else False,
                last_sync_error=metadata.last_sync_error if metadata else None,
            )
        return status
