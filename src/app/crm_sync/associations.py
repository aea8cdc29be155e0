"""Batch association lookup between CRM object types.

One HubSpot call per relationship type for a whole page of parents, so
round trips scale with relationship types rather than records.
"""

from __future__ import annotations

import httpx
import structlog

from src.app.crm_sync.client import CRMApiError, HubSpotClient

logger = structlog.get_logger(__name__)


class AssociationResolver:
    """Resolves parent -> related ids for a batch of parent records."""

    def __init__(self, client: HubSpotClient) -> None:
        self._client = client

    async def resolve_associations(
        self,
        parent_type: str,
        parent_ids: list[str],
        relationship_types: list[str],
    ) -> dict[str, dict[str, list[str]]]:
        """Fetch related ids for every parent in one call per relationship type.

        Every requested parent maps to a list for every requested relationship
        type, empty when the remote side returned nothing or the call failed.
        A failed call is logged and leaves that relationship type empty for the
        whole batch; the other types still resolve. Ids the remote returns that
        were not requested are dropped.

        Args:
            parent_type: HubSpot object type of the parents, e.g. "deals".
            parent_ids: Remote ids of the parents.
            relationship_types: Target object types, e.g. ["companies", "contacts"].

        Returns:
            Mapping of parent id -> {relationship type -> related ids}.
        """
        resolved: dict[str, dict[str, list[str]]] = {
            parent_id: {rel: [] for rel in relationship_types} for parent_id in parent_ids
        }
        if not parent_ids or not relationship_types:
            return resolved

        for rel in relationship_types:
            try:
                found = await self._client.batch_read_associations(
                    parent_type, rel, list(parent_ids)
                )
            except (CRMApiError, httpx.HTTPError) as exc:
                logger.warning(
                    "crm_sync.associations_failed",
                    parent_type=parent_type,
                    relationship_type=rel,
                    batch_size=len(parent_ids),
                    error=str(exc),
                )
                continue

            for parent_id, related_ids in found.items():
                if parent_id in resolved:
                    resolved[parent_id][rel] = related_ids

        return resolved
