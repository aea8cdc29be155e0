"""Entity definitions -- what differs between contacts, companies and deals.

Each EntitySpec tells the generic EntitySyncer which HubSpot object type to
page through, which properties to request, which associations to resolve
and how to map a remote record onto the promoted columns of its replica
table. Everything else about a sync is shared.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.app.crm_sync.client import LAST_MODIFIED_PROPERTY, parse_hubspot_datetime
from src.app.crm_sync.schemas import EntityType, RemoteRecord

# Transform: (remote record, resolved associations) -> promoted column values
Transform = Callable[[RemoteRecord, dict[str, list[str]]], dict[str, Any]]

DEAL_STAGE_WON = "closedwon"
DEAL_STAGE_LOST = "closedlost"


@dataclass(frozen=True)
class EntitySpec:
    """Static description of one replicated entity type."""

    entity_type: EntityType
    properties: list[str]
    transform: Transform
    association_types: list[str] = field(default_factory=list)
    batch_size: int = 500

    @property
    def object_type(self) -> str:
        """HubSpot object type name (same as the entity type value)."""
        return self.entity_type.value


def _text(props: dict[str, Any], key: str, default: str = "") -> str:
    value = props.get(key)
    return str(value) if value not in (None, "") else default


# ── Transforms ──────────────────────────────────────────────────────────────


def transform_contact(record: RemoteRecord, associations: dict[str, list[str]]) -> dict[str, Any]:
    props = record.properties
    first_name = _text(props, "firstname")
    last_name = _text(props, "lastname")
    return {
        "first_name": first_name,
        "last_name": last_name,
        "full_name": f"{first_name} {last_name}".strip() or "Unnamed Contact",
        "email": _text(props, "email"),
        "job_title": _text(props, "jobtitle"),
        "phone": _text(props, "phone"),
        "company": _text(props, "company"),
    }


def transform_company(record: RemoteRecord, associations: dict[str, list[str]]) -> dict[str, Any]:
    # Geocode columns belong to the geocoder and are never emitted here.
    props = record.properties
    domain = _text(props, "domain")
    return {
        "name": _text(props, "name", "Unnamed Company"),
        "domain": domain,
        "website": _text(props, "website", domain),
        "phone": _text(props, "phone"),
        "address": _text(props, "address"),
        "city": _text(props, "city"),
        "state": _text(props, "state"),
        "zip": _text(props, "zip"),
        "industry": _text(props, "industry"),
        "employees": _text(props, "numberofemployees"),
    }


def transform_deal(record: RemoteRecord, associations: dict[str, list[str]]) -> dict[str, Any]:
    """Deal columns plus stage flags, which are derived here and never on read."""
    props = record.properties
    dealstage = _text(props, "dealstage")
    is_won = dealstage == DEAL_STAGE_WON
    is_lost = dealstage == DEAL_STAGE_LOST
    return {
        "dealname": _text(props, "dealname", "Unnamed Deal"),
        "amount": _text(props, "amount", "0"),
        "dealstage": dealstage,
        "pipeline": _text(props, "pipeline", "default"),
        "closedate": parse_hubspot_datetime(props.get("closedate")),
        "dealtype": _text(props, "dealtype"),
        "owner_id": _text(props, "hubspot_owner_id"),
        "company_ids": list(associations.get("companies", [])),
        "contact_ids": list(associations.get("contacts", [])),
        "is_won": is_won,
        "is_lost": is_lost,
        "is_closed": is_won or is_lost,
    }


# ── Specs ───────────────────────────────────────────────────────────────────


CONTACTS = EntitySpec(
    entity_type=EntityType.CONTACTS,
    properties=[
        "firstname",
        "lastname",
        "email",
        "jobtitle",
        "phone",
        "company",
        LAST_MODIFIED_PROPERTY,
    ],
    transform=transform_contact,
)

COMPANIES = EntitySpec(
    entity_type=EntityType.COMPANIES,
    properties=[
        "name",
        "domain",
        "phone",
        "address",
        "city",
        "state",
        "zip",
        "industry",
        "numberofemployees",
        "website",
        LAST_MODIFIED_PROPERTY,
    ],
    transform=transform_company,
)

DEALS = EntitySpec(
    entity_type=EntityType.DEALS,
    properties=[
        "dealname",
        "amount",
        "dealstage",
        "pipeline",
        "closedate",
        "dealtype",
        "hubspot_owner_id",
        LAST_MODIFIED_PROPERTY,
    ],
    transform=transform_deal,
    association_types=["companies", "contacts"],
    batch_size=100,
)

ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    spec.entity_type: spec for spec in (CONTACTS, COMPANIES, DEALS)
}
