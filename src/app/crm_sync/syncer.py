"""Generic per-entity-type sync engine.

EntitySyncer runs both sync algorithms for whichever entity its EntitySpec
describes:

Full sync (Idle -> Paging -> Upserting -> Sweeping -> Done|Failed):
  cursor-page the whole remote collection, transform each page (resolving
  associations for the page in one call when the entity has any), flush to
  the replica whenever the write buffer reaches the batch size and once at
  the end, then sweep stale records and stamp sync_metadata. A limited run
  never counts as a full sync.

Incremental sync:
  same pipeline over a hs_lastmodifieddate >= watermark search, no sweep,
  and only last_incremental_sync_at moves. The watermark is the newest
  last_synced_at in the replica, else now - max_age_hours.

A remote error aborts paging; every page fetched before it is flushed, so
nothing already transformed is lost. Any error marks the run failed in
sync_metadata and the run history, and the entity's in-process lock is
always released.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.app.core.monitoring import track_sync_run
from src.app.crm_sync.associations import AssociationResolver
from src.app.crm_sync.client import CRMApiError, HubSpotClient
from src.app.crm_sync.entities import EntitySpec
from src.app.crm_sync.metadata import SyncMetadataStore
from src.app.crm_sync.records import LocalRecordStore
from src.app.crm_sync.schemas import (
    EntityType,
    RecordSyncStatus,
    RemoteRecord,
    SyncMode,
    SyncResult,
)

if TYPE_CHECKING:
    from src.app.crm_sync.orchestrator import SyncLock
    from src.app.crm_sync.runs import SyncRunRepository

logger = structlog.get_logger(__name__)

ALREADY_RUNNING_MESSAGE = "Sync already in progress"


class EntitySyncer:
    """Full and incremental sync for one entity type.

    Args:
        spec: Entity definition (object type, properties, transform, associations).
        client: HubSpot API client.
        record_store: Replica writer.
        metadata_store: sync_metadata bookkeeping.
        lock: Shared per-entity-type in-process lock.
        resolver: Association resolver (defaults to one over ``client``).
        runs: Optional run history repository.
        page_size: Remote page size (HubSpot max is 100).
        batch_size: Write batch size; defaults to EntitySpec.batch_size.
        max_age: Freshness window for the staleness sweep and the
            incremental fallback watermark.
    """

    def __init__(
        self,
        spec: EntitySpec,
        client: HubSpotClient,
        record_store: LocalRecordStore,
        metadata_store: SyncMetadataStore,
        lock: SyncLock,
        *,
        resolver: AssociationResolver | None = None,
        runs: SyncRunRepository | None = None,
        page_size: int = 100,
        batch_size: int | None = None,
        max_age: timedelta = timedelta(hours=24),
    ) -> None:
        self._spec = spec
        self._client = client
        self._records = record_store
        self._metadata = metadata_store
        self._lock = lock
        self._resolver = resolver or AssociationResolver(client)
        self._runs = runs
        self._page_size = page_size
        self._batch_size = batch_size or spec.batch_size
        self._max_age = max_age

    @property
    def entity_type(self) -> EntityType:
        return self._spec.entity_type

    # ── Public API ──────────────────────────────────────────────────────────

    async def full_sync(self, limit: int | None = None) -> SyncResult:
        """Page through the entire remote collection into the replica."""
        return await self._run(SyncMode.FULL, limit=limit)

    async def incremental_sync(
        self,
        max_age_hours: int | None = None,
        limit: int | None = None,
    ) -> SyncResult:
        """Fetch only records modified since the replica's watermark."""
        return await self._run(SyncMode.INCREMENTAL, limit=limit, max_age_hours=max_age_hours)

    # ── Run Lifecycle ───────────────────────────────────────────────────────

    async def _run(
        self,
        mode: SyncMode,
        limit: int | None = None,
        max_age_hours: int | None = None,
    ) -> SyncResult:
        entity = self.entity_type
        if not self._lock.try_acquire(entity):
            logger.info("crm_sync.already_running", entity_type=entity.value, mode=mode.value)
            return SyncResult(
                entity_type=entity,
                mode=mode,
                skipped=True,
                message=ALREADY_RUNNING_MESSAGE,
            )

        result = SyncResult(entity_type=entity, mode=mode, started_at=datetime.now(timezone.utc))
        try:
            async with track_sync_run(entity.value, mode.value) as tracker:
                await self._metadata.mark_in_progress(entity)
                run_id = await self._start_run(mode)
                logger.info(
                    "crm_sync.started",
                    entity_type=entity.value,
                    mode=mode.value,
                    limit=limit,
                )

                failure: str | None = None
                try:
                    processed = await self._page_through(mode, result, limit, max_age_hours)
                    if mode is SyncMode.FULL:
                        await self._records.sweep_stale(entity, self._max_age)
                        await self._metadata.mark_complete(
                            entity,
                            is_full_sync=limit is None,
                            total_records=processed,
                        )
                    else:
                        await self._metadata.mark_complete(entity, is_full_sync=False)
                except (CRMApiError, httpx.HTTPError) as exc:
                    failure = str(exc) or type(exc).__name__
                    logger.error(
                        "crm_sync.failed",
                        entity_type=entity.value,
                        mode=mode.value,
                        inserted=result.inserted,
                        modified=result.modified,
                        error=failure,
                    )
                except Exception as exc:
                    failure = str(exc) or type(exc).__name__
                    logger.exception(
                        "crm_sync.unexpected_error",
                        entity_type=entity.value,
                        mode=mode.value,
                        inserted=result.inserted,
                        modified=result.modified,
                    )

                if failure is not None:
                    result.success = False
                    result.error_messages.append(failure)
                    await self._mark_failed(failure)

                result.completed_at = datetime.now(timezone.utc)
                tracker["outcome"] = "success" if result.success else "failed"
                tracker["inserted"] = result.inserted
                tracker["modified"] = result.modified
                tracker["errors"] = result.errors
                await self._finish_run(run_id, result)
        finally:
            self._lock.release(entity)

        logger.info(
            "crm_sync.finished",
            entity_type=entity.value,
            mode=mode.value,
            success=result.success,
            inserted=result.inserted,
            modified=result.modified,
            errors=result.errors,
            total_records=result.total_records,
        )
        return result

    async def _start_run(self, mode: SyncMode) -> int | None:
        if self._runs is None:
            return None
        try:
            return await self._runs.start(self.entity_type, mode)
        except SQLAlchemyError as exc:
            logger.warning("crm_sync.run_record_failed", entity_type=self.entity_type.value, error=str(exc))
            return None

    async def _mark_failed(self, message: str) -> None:
        try:
            await self._metadata.mark_failed(self.entity_type, message)
        except SQLAlchemyError as exc:
            logger.warning(
                "crm_sync.metadata_write_failed", entity_type=self.entity_type.value, error=str(exc)
            )

    async def _finish_run(self, run_id: int | None, result: SyncResult) -> None:
        if self._runs is None or run_id is None:
            return
        try:
            await self._runs.finish(run_id, result)
        except SQLAlchemyError as exc:
            logger.warning("crm_sync.run_record_failed", entity_type=self.entity_type.value, error=str(exc))

    # ── Paging ──────────────────────────────────────────────────────────────

    async def _page_through(
        self,
        mode: SyncMode,
        result: SyncResult,
        limit: int | None,
        max_age_hours: int | None,
    ) -> int:
        """Fetch, transform and flush page by page. Returns records processed."""
        spec = self._spec
        since: datetime | None = None
        if mode is SyncMode.INCREMENTAL:
            since = await self._watermark(max_age_hours)
            logger.info(
                "crm_sync.watermark",
                entity_type=spec.entity_type.value,
                modified_since=since.isoformat(),
            )

        buffer: list[dict[str, Any]] = []
        processed = 0
        page_number = 0
        after: str | None = None

        while True:
            try:
                if since is None:
                    page = await self._client.list_page(
                        spec.object_type, spec.properties, limit=self._page_size, after=after
                    )
                else:
                    page = await self._client.search_page(
                        spec.object_type,
                        spec.properties,
                        modified_since=since,
                        limit=self._page_size,
                        after=after,
                    )
            except (CRMApiError, httpx.HTTPError):
                # Pages fetched before the failure are still written.
                await self._flush(buffer, result)
                raise
            page_number += 1

            records = page.results
            if limit is not None:
                records = records[: max(limit - processed, 0)]
            if records:
                buffer.extend(await self._transform_page(records))
                processed += len(records)
                result.total_records = processed

            logger.debug(
                "crm_sync.page_fetched",
                entity_type=spec.entity_type.value,
                page=page_number,
                count=len(records),
                processed=processed,
            )

            if len(buffer) >= self._batch_size:
                await self._flush(buffer, result)
                buffer = []

            after = page.next_after
            if after is None or (limit is not None and processed >= limit):
                break

        await self._flush(buffer, result)
        return processed

    async def _transform_page(self, records: list[RemoteRecord]) -> list[dict[str, Any]]:
        spec = self._spec
        associations: dict[str, dict[str, list[str]]] = {}
        if spec.association_types:
            associations = await self._resolver.resolve_associations(
                spec.object_type,
                [record.id for record in records],
                spec.association_types,
            )

        synced_at = datetime.now(timezone.utc)
        rows = []
        for record in records:
            row = spec.transform(record, associations.get(record.id, {}))
            row.update(
                hubspot_id=record.id,
                properties=record.properties,
                remote_updated_at=record.updated_at,
                last_synced_at=synced_at,
                sync_status=RecordSyncStatus.SYNCED.value,
                sync_error=None,
            )
            rows.append(row)
        return rows

    async def _flush(self, buffer: list[dict[str, Any]], result: SyncResult) -> None:
        if not buffer:
            return
        upserted = await self._records.bulk_upsert(
            self.entity_type, buffer, batch_size=self._batch_size
        )
        result.inserted += upserted.inserted
        result.modified += upserted.modified
        result.errors += upserted.errors
        result.error_messages.extend(upserted.error_messages)

    async def _watermark(self, max_age_hours: int | None) -> datetime:
        latest = await self._records.latest_synced_at(self.entity_type)
        if latest is not None:
            return latest
        if max_age_hours is None:
            return datetime.now(timezone.utc) - self._max_age
        return datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
