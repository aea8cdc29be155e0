"""CRM replica sync engine -- HubSpot contacts, companies and deals.

Keeps a local, queryable replica eventually consistent with HubSpot:
- HubSpotClient: list/search/association calls against the CRM v3 API
- AssociationResolver: batched deal -> company/contact id lookups
- LocalRecordStore: batched upsert-by-hubspot_id plus the staleness sweep
- SyncMetadataStore: per-entity-type sync bookkeeping and status reads
- EntitySyncer: full and incremental sync for one EntitySpec
- SyncOrchestrator: concurrent fan-out, staleness policy, background triggers
- SyncScheduler: periodic refresh loop

The replica is read-only from the engine's side: every write flows from
HubSpot to the local store, and remote deletions are not propagated.
"""

from src.app.crm_sync.associations import AssociationResolver
from src.app.crm_sync.client import CRMApiError, HubSpotClient
from src.app.crm_sync.entities import COMPANIES, CONTACTS, DEALS, ENTITY_SPECS, EntitySpec
from src.app.crm_sync.metadata import SyncMetadataStore
from src.app.crm_sync.orchestrator import (
    BackgroundTasks,
    SyncLock,
    SyncOrchestrator,
    build_orchestrator,
)
from src.app.crm_sync.records import LocalRecordStore
from src.app.crm_sync.runs import SyncRunRepository
from src.app.crm_sync.scheduler import SyncScheduler
from src.app.crm_sync.schemas import EntityType, RemotePage, SyncResult
from src.app.crm_sync.syncer import EntitySyncer

__all__ = [
    "AssociationResolver",
    "BackgroundTasks",
    "COMPANIES",
    "CONTACTS",
    "CRMApiError",
    "DEALS",
    "ENTITY_SPECS",
    "EntitySpec",
    "EntitySyncer",
    "EntityType",
    "HubSpotClient",
    "LocalRecordStore",
    "RemotePage",
    "SyncLock",
    "SyncMetadataStore",
    "SyncOrchestrator",
    "SyncResult",
    "SyncRunRepository",
    "SyncScheduler",
    "build_orchestrator",
]
