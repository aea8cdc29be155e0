"""Pydantic schemas for the CRM replica sync engine.

Defines the structured types that cross module boundaries:
- Enums: EntityType, RecordSyncStatus, SyncMode, SyncRunStatus
- Remote payloads: RemoteRecord, RemotePage
- Write accounting: UpsertResult
- Sync outcomes: SyncResult, EnsureSyncResult, SyncSummary
- Bookkeeping/status reads: SyncMetadataRead, EntitySyncStatus, StatusCounts
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Replicated CRM object types (values match HubSpot object type names)."""

    CONTACTS = "contacts"
    COMPANIES = "companies"
    DEALS = "deals"


class RecordSyncStatus(str, Enum):
    """Freshness state of a single replica record."""

    SYNCED = "synced"
    PENDING = "pending"  # not confirmed fresh within the window
    ERROR = "error"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncRunStatus(str, Enum):
    """Lifecycle of a persisted sync run record."""

    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


# ── Remote Payloads ─────────────────────────────────────────────────────────


class RemoteRecord(BaseModel):
    """One CRM object as returned by list/search calls."""

    id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None


class RemotePage(BaseModel):
    """One page of a cursor-paginated list or search response."""

    results: list[RemoteRecord] = Field(default_factory=list)
    next_after: str | None = None


# ── Write Accounting ────────────────────────────────────────────────────────


class UpsertResult(BaseModel):
    """Counts from LocalRecordStore.bulk_upsert across all batches."""

    inserted: int = 0
    modified: int = 0
    errors: int = 0
    error_messages: list[str] = Field(default_factory=list)


# ── Sync Outcomes ───────────────────────────────────────────────────────────


class SyncResult(BaseModel):
    """Outcome of one entity-type sync run.

    A skipped run (another run for the same entity type held the lock) has
    success=True, skipped=True and zero counts.
    """

    entity_type: EntityType
    mode: SyncMode = SyncMode.FULL
    success: bool = True
    skipped: bool = False
    inserted: int = 0
    modified: int = 0
    errors: int = 0
    total_records: int = 0
    error_messages: list[str] = Field(default_factory=list)
    message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class EnsureSyncResult(BaseModel):
    """Which stale entity types were handed to a background full sync."""

    triggered: bool = False
    entities: list[EntityType] = Field(default_factory=list)


class SyncSummary(BaseModel):
    """Totals across the per-entity results of sync_all / sync_all_incremental."""

    success: bool = True
    total_inserted: int = 0
    total_modified: int = 0
    total_errors: int = 0
    total_records: int = 0

    @classmethod
    def from_results(cls, results: dict[EntityType, SyncResult]) -> SyncSummary:
        values = list(results.values())
        return cls(
            success=all(r.success for r in values),
            total_inserted=sum(r.inserted for r in values),
            total_modified=sum(r.modified for r in values),
            total_errors=sum(r.errors for r in values),
            total_records=sum(r.total_records for r in values),
        )


# ── Bookkeeping / Status ────────────────────────────────────────────────────


class SyncMetadataRead(BaseModel):
    """Persisted per-entity-type sync bookkeeping."""

    entity_type: EntityType
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    sync_in_progress: bool = False
    total_records: int = 0
    last_sync_error: str | None = None


class StatusCounts(BaseModel):
    synced: int = 0
    pending: int = 0
    error: int = 0


class EntitySyncStatus(BaseModel):
    """Status view of one entity type, combining metadata with live counts."""

    entity_type: EntityType
    last_full_sync: datetime | None = None
    total_records: int = 0
    needs_sync: bool = True
    status: StatusCounts = Field(default_factory=StatusCounts)
    last_synced_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    sync_in_progress: bool = False
    last_sync_error: str | None = None


class SyncRunRead(BaseModel):
    """Persisted record of one sync attempt."""

    id: int
    entity_type: EntityType
    mode: SyncMode
    status: SyncRunStatus
    started_at: datetime
    completed_at: datetime | None = None
    inserted: int = 0
    modified: int = 0
    errors: int = 0
    total_records: int = 0
    error_message: str | None = None
