"""Shared fixtures for the CRM replica sync tests.

Provides:
- A temp-file SQLite (aiosqlite) database per test with every table created
- session_factory with the same async-generator contract as get_session()
- Record/metadata/run stores bound to that database
- FakeHubSpotClient: in-memory HubSpot with cursor paging, modified-since
  search, associations and injectable failures
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.app.core.database import Base
from src.app.crm_sync import models  # noqa: F401  (registers tables on Base)
from src.app.crm_sync.client import CRMApiError
from src.app.crm_sync.metadata import SyncMetadataStore
from src.app.crm_sync.records import LocalRecordStore
from src.app.crm_sync.runs import SyncRunRepository
from src.app.crm_sync.schemas import RemotePage, RemoteRecord

# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'replica.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Callable yielding an AsyncSession, like core.database.get_session."""

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


@pytest.fixture
def record_store(session_factory) -> LocalRecordStore:
    return LocalRecordStore(session_factory)


@pytest.fixture
def metadata_store(session_factory) -> SyncMetadataStore:
    return SyncMetadataStore(session_factory)


@pytest.fixture
def run_repository(session_factory) -> SyncRunRepository:
    return SyncRunRepository(session_factory)


# ── Fake HubSpot ─────────────────────────────────────────────────────────────


class FakeHubSpotClient:
    """In-memory stand-in for HubSpotClient.

    Records live in ``records`` keyed by object type; the cursor is the
    offset of the next page. Setting ``fail_on_page`` (1-based, counted per
    list or search call) makes that page raise ``fail_with``, or
    CRMApiError(500) when unset. Relationship types in
    ``failing_associations`` raise on batch read.
    """

    def __init__(
        self,
        records: dict[str, list[RemoteRecord]] | None = None,
        associations: dict[str, dict[str, list[str]]] | None = None,
    ) -> None:
        self.records = records or {}
        self.associations = associations or {}
        self.fail_on_page: int | None = None
        self.fail_with: Exception | None = None
        self.failing_associations: set[str] = set()
        self.list_calls: list[dict] = []
        self.search_calls: list[dict] = []
        self.association_calls: list[dict] = []

    def _page(self, items: list[RemoteRecord], limit: int, after: str | None) -> RemotePage:
        start = int(after) if after else 0
        end = start + limit
        return RemotePage(
            results=items[start:end],
            next_after=str(end) if end < len(items) else None,
        )

    def _maybe_fail(self, calls: list[dict]) -> None:
        if self.fail_on_page is not None and len(calls) == self.fail_on_page:
            raise self.fail_with or CRMApiError(500, "internal error")

    async def list_page(self, object_type, properties, limit=100, after=None) -> RemotePage:
        await asyncio.sleep(0)
        self.list_calls.append({"object_type": object_type, "limit": limit, "after": after})
        self._maybe_fail(self.list_calls)
        return self._page(self.records.get(object_type, []), limit, after)

    async def search_page(
        self, object_type, properties, modified_since, limit=100, after=None
    ) -> RemotePage:
        await asyncio.sleep(0)
        self.search_calls.append(
            {
                "object_type": object_type,
                "modified_since": modified_since,
                "limit": limit,
                "after": after,
            }
        )
        self._maybe_fail(self.search_calls)
        matching = [
            record
            for record in self.records.get(object_type, [])
            if record.updated_at is not None and record.updated_at >= modified_since
        ]
        return self._page(matching, limit, after)

    async def batch_read_associations(self, from_type, to_type, ids) -> dict[str, list[str]]:
        self.association_calls.append({"from_type": from_type, "to_type": to_type, "ids": list(ids)})
        if to_type in self.failing_associations:
            raise CRMApiError(502, "bad gateway")
        found = self.associations.get(to_type, {})
        return {i: found[i] for i in ids if i in found}


@pytest.fixture
def fake_client() -> FakeHubSpotClient:
    return FakeHubSpotClient()
