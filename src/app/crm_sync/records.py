"""Local replica store -- batched upsert-by-remote-id plus the staleness sweep.

Provides LocalRecordStore with the session_factory callable pattern used by
every repository in the app. Each write batch is its own transaction issuing
a single INSERT .. ON CONFLICT (hubspot_id) DO UPDATE statement built with the
bound dialect's insert(), so PostgreSQL and SQLite share the same code path.

The conflict update only applies when the stored last_synced_at is not newer
than the incoming one, which keeps per-record freshness monotonic. Geocode
columns on companies are never part of the update set.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.crm_sync.models import REPLICA_MODELS
from src.app.crm_sync.schemas import (
    EntityType,
    RecordSyncStatus,
    StatusCounts,
    UpsertResult,
)

logger = structlog.get_logger(__name__)

# Never overwritten by a conflict update.
_PROTECTED_COLUMNS = frozenset(
    {"id", "hubspot_id", "created_at", "lat", "lng", "geocoded_at", "geocode_error"}
)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dedupe(batch: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # One statement cannot touch the same conflict key twice; last one wins.
    by_id: dict[str, dict[str, Any]] = {}
    for row in batch:
        by_id[row["hubspot_id"]] = row
    return list(by_id.values())


class LocalRecordStore:
    """Per-entity-type replica tables behind one async session factory.

    Args:
        session_factory: Callable returning an async generator of AsyncSession.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    # ── Writes ──────────────────────────────────────────────────────────────

    async def bulk_upsert(
        self,
        entity_type: EntityType,
        records: list[dict[str, Any]],
        batch_size: int = 500,
    ) -> UpsertResult:
        """Upsert transformed records keyed by hubspot_id, batch by batch.

        A batch that fails is rolled back and counted entirely as errors;
        later batches still run.

        Args:
            entity_type: Which replica table to write.
            records: Column dicts produced by the entity transform. All rows
                must carry the same keys, including hubspot_id and
                last_synced_at.
            batch_size: Rows per statement/transaction.

        Returns:
            UpsertResult with inserted/modified/errors totals.
        """
        result = UpsertResult()
        if not records:
            return result

        table = REPLICA_MODELS[entity_type].__table__

        async for session in self._session_factory():
            insert = _DIALECT_INSERTS[session.get_bind().dialect.name]

            for start in range(0, len(records), batch_size):
                batch = _dedupe(records[start : start + batch_size])
                ids = [row["hubspot_id"] for row in batch]
                try:
                    existing = set(
                        (
                            await session.execute(
                                select(table.c.hubspot_id).where(table.c.hubspot_id.in_(ids))
                            )
                        ).scalars()
                    )

                    stmt = insert(table).values(batch)
                    update_cols = {
                        key: stmt.excluded[key]
                        for key in batch[0]
                        if key not in _PROTECTED_COLUMNS
                    }
                    update_cols["updated_at"] = func.now()
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[table.c.hubspot_id],
                        set_=update_cols,
                        where=table.c.last_synced_at <= stmt.excluded.last_synced_at,
                    ).returning(table.c.hubspot_id)

                    written = set((await session.execute(stmt)).scalars())
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    result.errors += len(batch)
                    result.error_messages.append(str(exc))
                    logger.error(
                        "crm_sync.batch_failed",
                        entity_type=entity_type.value,
                        batch_start=start,
                        batch_size=len(batch),
                        error=str(exc),
                    )
                    continue

                result.inserted += len(written - existing)
                result.modified += len(written & existing)

        logger.debug(
            "crm_sync.bulk_upsert_complete",
            entity_type=entity_type.value,
            inserted=result.inserted,
            modified=result.modified,
            errors=result.errors,
        )
        return result

    async def sweep_stale(self, entity_type: EntityType, max_age: timedelta) -> int:
        """Demote synced records not confirmed within max_age to pending.

        Returns:
            Number of records demoted.
        """
        table = REPLICA_MODELS[entity_type].__table__
        cutoff = datetime.now(timezone.utc) - max_age
        async for session in self._session_factory():
            stmt = (
                update(table)
                .where(
                    table.c.sync_status == RecordSyncStatus.SYNCED.value,
                    table.c.last_synced_at < cutoff,
                )
                .values(sync_status=RecordSyncStatus.PENDING.value)
            )
            result = await session.execute(stmt)
            await session.commit()
            swept = result.rowcount or 0
            if swept:
                logger.info(
                    "crm_sync.stale_swept",
                    entity_type=entity_type.value,
                    count=swept,
                )
            return swept

    # ── Reads ───────────────────────────────────────────────────────────────

    async def latest_synced_at(self, entity_type: EntityType) -> datetime | None:
        """Newest last_synced_at for the entity type, or None when empty."""
        table = REPLICA_MODELS[entity_type].__table__
        async for session in self._session_factory():
            value = (
                await session.execute(select(func.max(table.c.last_synced_at)))
            ).scalar_one_or_none()
            return as_utc(value)

    async def count(self, entity_type: EntityType) -> int:
        table = REPLICA_MODELS[entity_type].__table__
        async for session in self._session_factory():
            return (
                await session.execute(select(func.count()).select_from(table))
            ).scalar_one()

    async def count_by_status(self, entity_type: EntityType) -> StatusCounts:
        table = REPLICA_MODELS[entity_type].__table__
        async for session in self._session_factory():
            rows = await session.execute(
                select(table.c.sync_status, func.count()).group_by(table.c.sync_status)
            )
            counts = {status: total for status, total in rows.all()}
            return StatusCounts(
                synced=counts.get(RecordSyncStatus.SYNCED.value, 0),
                pending=counts.get(RecordSyncStatus.PENDING.value, 0),
                error=counts.get(RecordSyncStatus.ERROR.value, 0),
            )

    async def get(self, entity_type: EntityType, hubspot_id: str) -> dict[str, Any] | None:
        """Read one replica record back as a column dict (datetimes in UTC)."""
        table = REPLICA_MODELS[entity_type].__table__
        async for session in self._session_factory():
            row = (
                await session.execute(select(table).where(table.c.hubspot_id == hubspot_id))
            ).mappings().one_or_none()
            if row is None:
                return None
            return {
                key: as_utc(value) if isinstance(value, datetime) else value
                for key, value in row.items()
            }
