"""Create CRM replica tables and sync bookkeeping.

Revision ID: 001_crm_replica
Revises:
Create Date: 2026-10-17

Creates five tables:
- contacts, companies, deals: replica records keyed uniquely by hubspot_id,
  with promoted fields, the raw HubSpot property bag and freshness columns
- sync_metadata: one row per entity type (last full/incremental sync,
  in-progress flag, record count, last error)
- sync_runs: one row per sync attempt

Companies carry geocode columns (lat, lng, geocoded_at, geocode_error) that
the sync never writes after insert.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_crm_replica"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _replica_columns() -> list[sa.Column]:
    """Columns shared by every replica table (fresh objects per table)."""
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("hubspot_id", sa.String(64), nullable=False),
        sa.Column("properties", sa.JSON(), nullable=False),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "sync_status",
            sa.String(20),
            server_default=sa.text("'synced'"),
            nullable=False,
        ),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _text_column(name: str, length: int, default: str = "") -> sa.Column:
    return sa.Column(
        name,
        sa.String(length),
        server_default=sa.text(f"'{default}'"),
        nullable=False,
    )


def _replica_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_hubspot_id", table, ["hubspot_id"], unique=True)
    op.create_index(f"ix_{table}_last_synced_at", table, ["last_synced_at"])
    op.create_index(f"ix_{table}_sync_status", table, ["sync_status"])


def upgrade() -> None:
    # ── contacts table ──────────────────────────────────────────────────

    op.create_table(
        "contacts",
        *_replica_columns(),
        _text_column("first_name", 200),
        _text_column("last_name", 200),
        _text_column("full_name", 400),
        _text_column("email", 320),
        _text_column("job_title", 300),
        _text_column("phone", 100),
        _text_column("company", 300),
    )
    _replica_indexes("contacts")
    op.create_index("ix_contacts_full_name", "contacts", ["full_name"])
    op.create_index("ix_contacts_email", "contacts", ["email"])

    # ── companies table ─────────────────────────────────────────────────

    op.create_table(
        "companies",
        *_replica_columns(),
        sa.Column("name", sa.String(300), nullable=False),
        _text_column("domain", 300),
        _text_column("website", 500),
        _text_column("phone", 100),
        _text_column("address", 500),
        _text_column("city", 200),
        _text_column("state", 100),
        _text_column("zip", 20),
        _text_column("industry", 200),
        _text_column("employees", 50),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("geocoded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("geocode_error", sa.Boolean(), nullable=True),
    )
    _replica_indexes("companies")
    op.create_index("ix_companies_name", "companies", ["name"])
    op.create_index("ix_companies_domain", "companies", ["domain"])
    op.create_index("ix_companies_industry", "companies", ["industry"])

    # ── deals table ─────────────────────────────────────────────────────

    op.create_table(
        "deals",
        *_replica_columns(),
        sa.Column("dealname", sa.String(300), nullable=False),
        _text_column("amount", 50, "0"),
        _text_column("dealstage", 100),
        _text_column("pipeline", 100, "default"),
        sa.Column("closedate", sa.DateTime(timezone=True), nullable=True),
        _text_column("dealtype", 100),
        _text_column("owner_id", 64),
        sa.Column("company_ids", sa.JSON(), nullable=False),
        sa.Column("contact_ids", sa.JSON(), nullable=False),
        sa.Column("is_closed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_won", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_lost", sa.Boolean(), server_default=sa.false(), nullable=False),
    )
    _replica_indexes("deals")
    op.create_index("ix_deals_dealname", "deals", ["dealname"])
    op.create_index("ix_deals_dealstage", "deals", ["dealstage"])
    op.create_index("ix_deals_pipeline", "deals", ["pipeline"])
    op.create_index("ix_deals_is_closed", "deals", ["is_closed"])

    # ── sync_metadata table ─────────────────────────────────────────────

    op.create_table(
        "sync_metadata",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("last_full_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_incremental_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "sync_in_progress",
            sa.Boolean(),
            server_default=sa.false(),
            nullable=False,
        ),
        sa.Column("total_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("entity_type", name="uq_sync_metadata_entity_type"),
    )

    # ── sync_runs table ─────────────────────────────────────────────────

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("mode", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("inserted", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("modified", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("errors", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_records", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_runs_entity_type", "sync_runs", ["entity_type"])
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])


def downgrade() -> None:
    op.drop_table("sync_runs")
    op.drop_table("sync_metadata")
    op.drop_table("deals")
    op.drop_table("companies")
    op.drop_table("contacts")
