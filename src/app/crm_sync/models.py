"""Replica persistence models -- one table per CRM entity type plus bookkeeping.

SQLAlchemy models on the shared Base:
- ContactModel, CompanyModel, DealModel: replica records keyed uniquely by
  hubspot_id, carrying promoted scalar fields, the opaque remote property bag
  and engine-owned freshness columns (last_synced_at, sync_status)
- SyncMetadataModel: one row per entity type, created lazily on first sync
- SyncRunModel: one row per sync attempt (history + emergency cancel target)

Column types are dialect-neutral (generic JSON, integer keys) so the same
models back PostgreSQL in deployment and SQLite in tests.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base
from src.app.crm_sync.schemas import EntityType


class ReplicaRecordMixin:
    """Columns shared by every replica table."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hubspot_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    properties: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    remote_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    sync_status: Mapped[str] = mapped_column(
        String(20), default="synced", nullable=False, index=True
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(ReplicaRecordMixin, Base):
    """Replica of a HubSpot contact."""

    __tablename__ = "contacts"

    first_name: Mapped[str] = mapped_column(String(200), default="")
    last_name: Mapped[str] = mapped_column(String(200), default="")
    full_name: Mapped[str] = mapped_column(String(400), default="", index=True)
    email: Mapped[str] = mapped_column(String(320), default="", index=True)
    job_title: Mapped[str] = mapped_column(String(300), default="")
    phone: Mapped[str] = mapped_column(String(100), default="")
    company: Mapped[str] = mapped_column(String(300), default="")


class CompanyModel(ReplicaRecordMixin, Base):
    """Replica of a HubSpot company.

    lat/lng/geocoded_at/geocode_error belong to the geocoding job; syncs
    initialize them on insert and never overwrite them.
    """

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(300), default="", index=True)
    website: Mapped[str] = mapped_column(String(500), default="")
    phone: Mapped[str] = mapped_column(String(100), default="")
    address: Mapped[str] = mapped_column(String(500), default="")
    city: Mapped[str] = mapped_column(String(200), default="")
    state: Mapped[str] = mapped_column(String(100), default="")
    zip: Mapped[str] = mapped_column(String(20), default="")
    industry: Mapped[str] = mapped_column(String(200), default="", index=True)
    employees: Mapped[str] = mapped_column(String(50), default="")
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    geocoded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    geocode_error: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class DealModel(ReplicaRecordMixin, Base):
    """Replica of a HubSpot deal with resolved associations and stage flags."""

    __tablename__ = "deals"

    dealname: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    amount: Mapped[str] = mapped_column(String(50), default="0")
    dealstage: Mapped[str] = mapped_column(String(100), default="", index=True)
    pipeline: Mapped[str] = mapped_column(String(100), default="default", index=True)
    closedate: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dealtype: Mapped[str] = mapped_column(String(100), default="")
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    company_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    contact_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    is_won: Mapped[bool] = mapped_column(Boolean, default=False)
    is_lost: Mapped[bool] = mapped_column(Boolean, default=False)


class SyncMetadataModel(Base):
    """Per-entity-type sync bookkeeping; the source of truth for staleness."""

    __tablename__ = "sync_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_incremental_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_in_progress: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class SyncRunModel(Base):
    """One sync attempt for one entity type."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    inserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    modified: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


REPLICA_MODELS: dict[EntityType, type[ReplicaRecordMixin]] = {
    EntityType.CONTACTS: ContactModel,
    EntityType.COMPANIES: CompanyModel,
    EntityType.DEALS: DealModel,
}
