"""Tests for EntitySyncer full and incremental sync.

Runs the real record/metadata/run stores on SQLite against the in-memory
FakeHubSpotClient from conftest.

Tests cover:
- Paging a 250-record collection (100/100/50) into the replica
- Idempotent re-sync and monotonic last_synced_at
- Incremental watermark from the replica, else now - max_age_hours
- Partial failure: fetched pages persist, metadata records the error
- Timeouts, database and transform errors closing out the run as failed
- Limited runs never counting as a full sync
- Mutual exclusion through the shared SyncLock
- Deal associations and derived stage flags
- The staleness sweep after a full sync
- Entity transforms
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from src.app.crm_sync.entities import (
    COMPANIES,
    CONTACTS,
    DEALS,
    transform_company,
    transform_contact,
    transform_deal,
)
from src.app.crm_sync.orchestrator import SyncLock
from src.app.crm_sync.records import LocalRecordStore
from src.app.crm_sync.schemas import (
    EntityType,
    RemoteRecord,
    SyncMode,
    SyncRunStatus,
    UpsertResult,
)
from src.app.crm_sync.syncer import ALREADY_RUNNING_MESSAGE, EntitySyncer

REMOTE_UPDATED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _contact(index: int, updated_at: datetime = REMOTE_UPDATED_AT, **props) -> RemoteRecord:
    properties = {
        "firstname": f"First{index}",
        "lastname": f"Last{index}",
        "email": f"person{index}@example.com",
    }
    properties.update(props)
    return RemoteRecord(id=str(index), properties=properties, updated_at=updated_at)


def _contacts(count: int) -> list[RemoteRecord]:
    return [_contact(i) for i in range(1, count + 1)]


# ── Full Sync ────────────────────────────────────────────────────────────────


class TestFullSync:
    """Tests for paging the whole remote collection into the replica."""

    @pytest.fixture
    def lock(self):
        return SyncLock()

    @pytest.fixture
    def syncer(self, fake_client, record_store, metadata_store, lock, run_repository):
        return EntitySyncer(
            CONTACTS, fake_client, record_store, metadata_store, lock, runs=run_repository
        )

    async def test_pages_through_250_contacts(self, syncer, fake_client, record_store, metadata_store):
        """Three pages (100/100/50) land as 250 inserts and a full-sync stamp."""
        fake_client.records["contacts"] = _contacts(250)
        started = datetime.now(timezone.utc)

        result = await syncer.full_sync()

        finished = datetime.now(timezone.utc)
        assert result.success is True
        assert result.mode is SyncMode.FULL
        assert (result.inserted, result.modified, result.errors) == (250, 0, 0)
        assert result.total_records == 250
        assert [c["after"] for c in fake_client.list_calls] == [None, "100", "200"]
        assert await record_store.count(EntityType.CONTACTS) == 250

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert started <= meta.last_full_sync_at <= finished
        assert meta.total_records == 250
        assert meta.sync_in_progress is False

    async def test_transformed_columns_and_bookkeeping(self, syncer, fake_client, record_store):
        fake_client.records["contacts"] = [_contact(7, jobtitle="CTO")]

        await syncer.full_sync()

        stored = await record_store.get(EntityType.CONTACTS, "7")
        assert stored["full_name"] == "First7 Last7"
        assert stored["job_title"] == "CTO"
        assert stored["properties"]["email"] == "person7@example.com"
        assert stored["remote_updated_at"] == REMOTE_UPDATED_AT
        assert stored["sync_status"] == "synced"
        assert stored["sync_error"] is None

    async def test_resync_is_idempotent(self, syncer, fake_client, record_store):
        """A second full sync modifies every record and inserts none."""
        fake_client.records["contacts"] = _contacts(250)
        await syncer.full_sync()
        first_synced = (await record_store.get(EntityType.CONTACTS, "42"))["last_synced_at"]

        result = await syncer.full_sync()

        assert (result.inserted, result.modified) == (0, 250)
        assert await record_store.count(EntityType.CONTACTS) == 250
        second_synced = (await record_store.get(EntityType.CONTACTS, "42"))["last_synced_at"]
        assert second_synced >= first_synced

    async def test_remote_failure_keeps_flushed_batches(
        self, fake_client, record_store, metadata_store, lock, run_repository
    ):
        """Page 3 failing still writes the buffered pages 1-2 and records the error."""
        fake_client.records["contacts"] = _contacts(500)
        fake_client.fail_on_page = 3
        syncer = EntitySyncer(
            CONTACTS, fake_client, record_store, metadata_store, lock, runs=run_repository
        )

        result = await syncer.full_sync()

        assert result.success is False
        assert result.inserted == 200
        assert result.total_records == 200
        assert result.error_messages
        assert await record_store.count(EntityType.CONTACTS) == 200
        counts = await record_store.count_by_status(EntityType.CONTACTS)
        assert counts.synced == 200

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.last_full_sync_at is None
        assert "500" in meta.last_sync_error
        assert meta.sync_in_progress is False
        assert lock.is_held(EntityType.CONTACTS) is False

        runs = await run_repository.list_recent()
        assert runs[0].status is SyncRunStatus.ERROR
        assert runs[0].inserted == 200

    async def test_timeout_fails_the_run(self, syncer, fake_client, record_store, metadata_store):
        """A read timeout on page 2 fails the run without a full-sync stamp."""
        fake_client.records["contacts"] = _contacts(250)
        fake_client.fail_on_page = 2
        fake_client.fail_with = httpx.ReadTimeout("timed out")

        result = await syncer.full_sync()

        assert result.success is False
        assert result.error_messages == ["timed out"]
        assert result.total_records == 100
        assert await record_store.count(EntityType.CONTACTS) == 100

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.last_full_sync_at is None
        assert meta.last_sync_error == "timed out"
        assert meta.sync_in_progress is False

    async def test_database_error_after_paging_fails_the_run(
        self, syncer, fake_client, record_store, metadata_store, lock, run_repository
    ):
        """A sweep that hits a database error still closes out the run."""
        fake_client.records["contacts"] = _contacts(3)
        record_store.sweep_stale = AsyncMock(
            side_effect=OperationalError("UPDATE contacts", {}, Exception("database is locked"))
        )

        result = await syncer.full_sync()

        assert result.success is False
        assert result.inserted == 3
        assert "database is locked" in result.error_messages[0]

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.sync_in_progress is False
        assert meta.last_full_sync_at is None
        assert "database is locked" in meta.last_sync_error
        assert lock.is_held(EntityType.CONTACTS) is False

        runs = await run_repository.list_recent()
        assert runs[0].status is SyncRunStatus.ERROR
        assert runs[0].completed_at is not None

    async def test_transform_error_fails_the_run(
        self, fake_client, record_store, metadata_store, lock
    ):
        def broken_transform(record, associations):
            raise ValueError(f"bad record {record.id}")

        fake_client.records["contacts"] = _contacts(2)
        syncer = EntitySyncer(
            replace(CONTACTS, transform=broken_transform),
            fake_client,
            record_store,
            metadata_store,
            lock,
        )

        result = await syncer.full_sync()

        assert result.success is False
        assert result.error_messages == ["bad record 1"]
        assert await record_store.count(EntityType.CONTACTS) == 0
        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.sync_in_progress is False
        assert meta.last_sync_error == "bad record 1"
        assert lock.is_held(EntityType.CONTACTS) is False

    async def test_limited_sync_is_not_a_full_sync(self, syncer, fake_client, record_store, metadata_store):
        """limit stops after N records and leaves last_full_sync_at unset."""
        fake_client.records["contacts"] = _contacts(250)

        result = await syncer.full_sync(limit=150)

        assert result.success is True
        assert result.total_records == 150
        assert result.inserted == 150
        assert len(fake_client.list_calls) == 2
        assert await record_store.count(EntityType.CONTACTS) == 150

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.last_full_sync_at is None
        assert meta.last_incremental_sync_at is not None
        assert meta.total_records == 150

    async def test_sweep_demotes_records_missing_from_remote(
        self, syncer, fake_client, record_store
    ):
        """Records not refreshed within the window end up pending."""
        stale_at = datetime.now(timezone.utc) - timedelta(hours=48)
        await record_store.bulk_upsert(
            EntityType.CONTACTS,
            [
                {
                    "hubspot_id": "gone",
                    "first_name": "",
                    "last_name": "",
                    "full_name": "Deleted Remotely",
                    "email": "",
                    "job_title": "",
                    "phone": "",
                    "company": "",
                    "properties": {},
                    "remote_updated_at": None,
                    "last_synced_at": stale_at,
                    "sync_status": "synced",
                    "sync_error": None,
                }
            ],
        )
        fake_client.records["contacts"] = _contacts(2)

        await syncer.full_sync()

        counts = await record_store.count_by_status(EntityType.CONTACTS)
        assert (counts.synced, counts.pending) == (2, 1)
        assert (await record_store.get(EntityType.CONTACTS, "gone"))["sync_status"] == "pending"

    async def test_run_history_records_completion(self, syncer, fake_client, run_repository):
        fake_client.records["contacts"] = _contacts(5)

        await syncer.full_sync()

        runs = await run_repository.list_recent()
        assert len(runs) == 1
        assert runs[0].status is SyncRunStatus.COMPLETE
        assert runs[0].mode is SyncMode.FULL
        assert runs[0].inserted == 5
        assert runs[0].completed_at is not None

    async def test_write_errors_do_not_fail_the_run(self, fake_client, metadata_store, lock):
        """Batch write errors are counted; the run still succeeds."""
        store = AsyncMock(spec=LocalRecordStore)
        store.bulk_upsert.return_value = UpsertResult(
            inserted=1, errors=1, error_messages=["constraint failed"]
        )
        store.sweep_stale.return_value = 0
        fake_client.records["contacts"] = _contacts(2)
        syncer = EntitySyncer(CONTACTS, fake_client, store, metadata_store, lock)

        result = await syncer.full_sync()

        assert result.success is True
        assert result.errors == 1
        assert result.error_messages == ["constraint failed"]
        assert (await metadata_store.get(EntityType.CONTACTS)).last_full_sync_at is not None


# ── Mutual Exclusion ─────────────────────────────────────────────────────────


class TestMutualExclusion:
    """Tests for the per-entity-type SyncLock."""

    async def test_held_lock_skips_without_side_effects(
        self, fake_client, record_store, metadata_store
    ):
        lock = SyncLock()
        lock.try_acquire(EntityType.CONTACTS)
        fake_client.records["contacts"] = _contacts(3)
        syncer = EntitySyncer(CONTACTS, fake_client, record_store, metadata_store, lock)

        result = await syncer.full_sync()

        assert result.success is True
        assert result.skipped is True
        assert result.message == ALREADY_RUNNING_MESSAGE
        assert fake_client.list_calls == []
        assert await metadata_store.get(EntityType.CONTACTS) is None

    async def test_concurrent_runs_one_skips(self, fake_client, record_store, metadata_store):
        """Two overlapping syncs of one entity type: exactly one does the work."""
        lock = SyncLock()
        fake_client.records["contacts"] = _contacts(10)
        syncer = EntitySyncer(CONTACTS, fake_client, record_store, metadata_store, lock)

        first, second = await asyncio.gather(syncer.full_sync(), syncer.incremental_sync())

        assert [first.skipped, second.skipped].count(True) == 1
        assert lock.is_held(EntityType.CONTACTS) is False

    async def test_other_entity_types_are_not_blocked(
        self, fake_client, record_store, metadata_store
    ):
        lock = SyncLock()
        lock.try_acquire(EntityType.CONTACTS)
        fake_client.records["companies"] = [
            RemoteRecord(id="1", properties={"name": "Acme"}, updated_at=REMOTE_UPDATED_AT)
        ]
        syncer = EntitySyncer(COMPANIES, fake_client, record_store, metadata_store, lock)

        result = await syncer.full_sync()

        assert result.skipped is False
        assert result.inserted == 1


# ── Incremental Sync ─────────────────────────────────────────────────────────


class TestIncrementalSync:
    """Tests for watermark-based incremental sync."""

    @pytest.fixture
    def syncer(self, fake_client, record_store, metadata_store):
        return EntitySyncer(CONTACTS, fake_client, record_store, metadata_store, SyncLock())

    async def test_immediately_after_full_sync_finds_nothing(
        self, syncer, fake_client, record_store, metadata_store
    ):
        fake_client.records["contacts"] = _contacts(250)
        await syncer.full_sync()
        full_meta = await metadata_store.get(EntityType.CONTACTS)
        watermark = await record_store.latest_synced_at(EntityType.CONTACTS)

        result = await syncer.incremental_sync()

        assert result.mode is SyncMode.INCREMENTAL
        assert (result.inserted, result.modified) == (0, 0)
        assert fake_client.search_calls[0]["modified_since"] == watermark

        meta = await metadata_store.get(EntityType.CONTACTS)
        assert meta.last_full_sync_at == full_meta.last_full_sync_at
        assert meta.last_incremental_sync_at > full_meta.last_incremental_sync_at
        assert meta.total_records == 250

    async def test_empty_replica_uses_max_age_window(self, syncer, fake_client):
        before = datetime.now(timezone.utc)

        await syncer.incremental_sync(max_age_hours=6)

        after = datetime.now(timezone.utc)
        since = fake_client.search_calls[0]["modified_since"]
        assert before - timedelta(hours=6) <= since <= after - timedelta(hours=6)

    async def test_picks_up_only_changed_records(self, syncer, fake_client, record_store):
        fake_client.records["contacts"] = _contacts(3)
        await syncer.full_sync()
        untouched = await record_store.get(EntityType.CONTACTS, "1")

        changed_at = datetime.now(timezone.utc)
        fake_client.records["contacts"][1] = _contact(2, changed_at, firstname="Grace")
        fake_client.records["contacts"].append(_contact(4, changed_at))

        result = await syncer.incremental_sync()

        assert (result.inserted, result.modified) == (1, 1)
        assert (await record_store.get(EntityType.CONTACTS, "2"))["first_name"] == "Grace"
        assert await record_store.count(EntityType.CONTACTS) == 4
        assert await record_store.get(EntityType.CONTACTS, "1") == untouched

    async def test_failure_leaves_metadata_timestamps(self, syncer, fake_client, metadata_store):
        fake_client.records["contacts"] = _contacts(3)
        await syncer.full_sync()
        before = await metadata_store.get(EntityType.CONTACTS)
        fake_client.fail_on_page = 1

        result = await syncer.incremental_sync()

        assert result.success is False
        after = await metadata_store.get(EntityType.CONTACTS)
        assert after.last_incremental_sync_at == before.last_incremental_sync_at
        assert after.last_sync_error is not None


# ── Deals ────────────────────────────────────────────────────────────────────


class TestDealSync:
    """Tests for association resolution and stage flags on deals."""

    @pytest.fixture
    def deals(self):
        return [
            RemoteRecord(
                id="d1",
                properties={
                    "dealname": "Big Renewal",
                    "dealstage": "closedwon",
                    "amount": "5000",
                    "closedate": "2026-05-01T00:00:00Z",
                },
                updated_at=REMOTE_UPDATED_AT,
            ),
            RemoteRecord(
                id="d2",
                properties={"dealname": "Lost Pilot", "dealstage": "closedlost"},
                updated_at=REMOTE_UPDATED_AT,
            ),
            RemoteRecord(
                id="d3",
                properties={"dealstage": "appointmentscheduled"},
                updated_at=REMOTE_UPDATED_AT,
            ),
        ]

    @pytest.fixture
    def syncer(self, fake_client, record_store, metadata_store):
        return EntitySyncer(DEALS, fake_client, record_store, metadata_store, SyncLock())

    async def test_associations_and_flags(self, syncer, fake_client, record_store, deals):
        fake_client.records["deals"] = deals
        fake_client.associations = {
            "companies": {"d1": ["c1"]},
            "contacts": {"d1": ["p1", "p2"], "d3": ["p3"]},
        }

        result = await syncer.full_sync()

        assert result.inserted == 3
        assert len(fake_client.association_calls) == 2
        assert fake_client.association_calls[0]["ids"] == ["d1", "d2", "d3"]

        won = await record_store.get(EntityType.DEALS, "d1")
        assert won["company_ids"] == ["c1"]
        assert won["contact_ids"] == ["p1", "p2"]
        assert (won["is_won"], won["is_lost"], won["is_closed"]) == (True, False, True)
        assert won["closedate"] == datetime(2026, 5, 1, tzinfo=timezone.utc)

        lost = await record_store.get(EntityType.DEALS, "d2")
        assert (lost["is_won"], lost["is_lost"], lost["is_closed"]) == (False, True, True)
        assert lost["company_ids"] == []

        open_deal = await record_store.get(EntityType.DEALS, "d3")
        assert open_deal["dealname"] == "Unnamed Deal"
        assert open_deal["pipeline"] == "default"
        assert open_deal["amount"] == "0"
        assert open_deal["is_closed"] is False
        assert open_deal["contact_ids"] == ["p3"]

    async def test_association_failure_is_not_fatal(self, syncer, fake_client, record_store, deals):
        fake_client.records["deals"] = deals
        fake_client.associations = {"contacts": {"d1": ["p1"]}}
        fake_client.failing_associations = {"companies"}

        result = await syncer.full_sync()

        assert result.success is True
        assert result.inserted == 3
        stored = await record_store.get(EntityType.DEALS, "d1")
        assert stored["company_ids"] == []
        assert stored["contact_ids"] == ["p1"]


# ── Transforms ───────────────────────────────────────────────────────────────


class TestTransforms:
    """Tests for the per-entity column mapping."""

    def test_contact_without_names(self):
        row = transform_contact(RemoteRecord(id="1", properties={"email": "x@y.z"}), {})

        assert row["full_name"] == "Unnamed Contact"
        assert row["email"] == "x@y.z"
        assert row["first_name"] == ""

    def test_company_website_falls_back_to_domain(self):
        row = transform_company(
            RemoteRecord(id="1", properties={"domain": "acme.test", "numberofemployees": 40}),
            {},
        )

        assert row["name"] == "Unnamed Company"
        assert row["website"] == "acme.test"
        assert row["employees"] == "40"
        assert not {"lat", "lng", "geocoded_at", "geocode_error"} & set(row)

    def test_deal_without_associations(self):
        row = transform_deal(RemoteRecord(id="1", properties={"dealname": "X"}), {})

        assert row["company_ids"] == []
        assert row["contact_ids"] == []
        assert row["closedate"] is None
        assert row["is_closed"] is False
