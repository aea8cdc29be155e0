"""REST API endpoints for the CRM replica sync engine.

Admin/ops surface over SyncOrchestrator: detailed status, staleness-driven
or forced sync, on-demand full/incremental sync of everything or of one
entity type, run history, and the emergency cancel of in-flight runs.
All endpoints require the X-API-Key admin header when ADMIN_API_KEY is set.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.app.api.deps import get_orchestrator, require_admin
from src.app.crm_sync.orchestrator import SyncOrchestrator
from src.app.crm_sync.schemas import (
    EntitySyncStatus,
    EntityType,
    SyncResult,
    SyncRunRead,
    SyncSummary,
)

router = APIRouter(
    prefix="/api/v1/sync",
    tags=["crm-sync"],
    dependencies=[Depends(require_admin)],
)


# ── Request Schemas ──────────────────────────────────────────────────────────


class EnsureSyncRequest(BaseModel):
    """Request body for the staleness check / forced full sync."""

    force_full_sync: bool = False
    max_age_hours: int | None = Field(default=None, ge=1)


class SyncRequest(BaseModel):
    """Request body for on-demand syncs (no limit means every record)."""

    limit: int | None = Field(default=None, ge=1)
    incremental: bool = False
    max_age_hours: int | None = Field(default=None, ge=1)


# ── Response Schemas ─────────────────────────────────────────────────────────


class SyncStatusResponse(BaseModel):
    entities: dict[EntityType, EntitySyncStatus]


class EnsureSyncResponse(BaseModel):
    """Outcome of POST /status: which entity types were (re)synced."""

    message: str
    entities: list[EntityType] = Field(default_factory=list)
    results: dict[EntityType, SyncResult] | None = None


class SyncAllResponse(BaseModel):
    success: bool
    summary: SyncSummary
    results: dict[EntityType, SyncResult]


class CancelRunsResponse(BaseModel):
    message: str
    cancelled: int


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    max_age_hours: int | None = Query(default=None, ge=1),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncStatusResponse:
    """Per-entity status: counts by sync status, freshness, in-progress, last error."""
    status = await orchestrator.get_sync_status(max_age_hours)
    return SyncStatusResponse(entities=status)


@router.post("/status", response_model=EnsureSyncResponse)
async def ensure_synced(
    body: EnsureSyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> EnsureSyncResponse:
    """Force a full sync of everything (waits), or background-sync stale types."""
    body = body or EnsureSyncRequest()

    if body.force_full_sync:
        results = await orchestrator.sync_all()
        return EnsureSyncResponse(
            message="Full sync completed",
            entities=list(results),
            results=results,
        )

    ensured = await orchestrator.ensure_data_synced(body.max_age_hours)
    if ensured.triggered:
        return EnsureSyncResponse(
            message="Sync triggered for stale entities",
            entities=ensured.entities,
        )
    return EnsureSyncResponse(message="All data is up to date")


@router.post("/all", response_model=SyncAllResponse)
async def sync_all(
    body: SyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncAllResponse:
    """Sync every entity type and wait for the results."""
    body = body or SyncRequest()

    if body.incremental:
        results = await orchestrator.sync_all_incremental(body.max_age_hours)
    else:
        results = await orchestrator.sync_all(limit=body.limit)

    summary = SyncSummary.from_results(results)
    return SyncAllResponse(success=summary.success, summary=summary, results=results)


@router.get("/runs", response_model=list[SyncRunRead])
async def list_sync_runs(
    limit: int = Query(default=20, ge=1, le=200),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> list[SyncRunRead]:
    """Most recent sync runs, newest first."""
    return await orchestrator.list_runs(limit)


@router.post("/runs/cancel", response_model=CancelRunsResponse)
async def cancel_sync_runs(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> CancelRunsResponse:
    """Emergency: mark every running sync run cancelled and clear in-progress flags."""
    cancelled = await orchestrator.cancel_inflight_runs()
    return CancelRunsResponse(
        message=f"Cancelled {cancelled} running sync run(s)",
        cancelled=cancelled,
    )


@router.post("/{entity_type}", response_model=SyncResult)
async def sync_entity(
    entity_type: EntityType,
    body: SyncRequest | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncResult:
    """Sync a single entity type (contacts, companies or deals)."""
    body = body or SyncRequest()
    return await orchestrator.sync_entity(
        entity_type,
        limit=body.limit,
        incremental=body.incremental,
        max_age_hours=body.max_age_hours,
    )
