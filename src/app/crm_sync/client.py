"""Async HTTP client for the HubSpot CRM v3 REST API.

Covers the three call shapes the sync engine needs:
- list_page: cursor-paginated object listing (full sync)
- search_page: filtered search on hs_lastmodifieddate (incremental sync)
- batch_read_associations: parent -> child id lists for one relationship type

One pooled httpx.AsyncClient per HubSpotClient, bearer-token auth and a
bounded timeout on every call. Connection failures, 429 and 5xx responses
are retried with tenacity (3 attempts, exponential backoff 1-10s). Any other
non-success status surfaces immediately as CRMApiError, and a timeout is
never retried, so a hung page fails the running sync instead of stalling it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.app.crm_sync.schemas import RemotePage, RemoteRecord

logger = structlog.get_logger(__name__)

LAST_MODIFIED_PROPERTY = "hs_lastmodifieddate"


class CRMApiError(Exception):
    """Non-success response from the HubSpot API."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HubSpot API error: {status_code} - {body}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CRMApiError):
        return exc.retryable
    return isinstance(exc, httpx.ConnectError)


_hubspot_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


def parse_hubspot_datetime(value: Any) -> datetime | None:
    """Parse a HubSpot timestamp (ISO-8601 string or epoch milliseconds).

    Returns a timezone-aware UTC datetime, or None for empty/unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("hubspot.unparseable_timestamp", value=text)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_remote_record(item: dict[str, Any]) -> RemoteRecord:
    properties = item.get("properties") or {}
    updated_at = item.get("updatedAt") or properties.get(LAST_MODIFIED_PROPERTY)
    return RemoteRecord(
        id=str(item["id"]),
        properties=properties,
        updated_at=parse_hubspot_datetime(updated_at),
    )


def _to_page(data: dict[str, Any]) -> RemotePage:
    after = ((data.get("paging") or {}).get("next") or {}).get("after")
    return RemotePage(
        results=[_to_remote_record(item) for item in data.get("results") or []],
        next_after=str(after) if after else None,
    )


class HubSpotClient:
    """Async client for HubSpot CRM objects, search and associations.

    Args:
        api_key: Private app access token (sent as a bearer token).
        base_url: API root, e.g. https://api.hubapi.com.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("HubSpot API key not configured")
        self._http = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/crm/v3",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @_hubspot_retry
    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._http.request(method, path, **kwargs)
        if response.is_error:
            logger.warning(
                "hubspot.request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise CRMApiError(response.status_code, response.text)
        return response.json()

    async def list_page(
        self,
        object_type: str,
        properties: list[str],
        limit: int = 100,
        after: str | None = None,
    ) -> RemotePage:
        """GET /objects/{type} -- one page of the unfiltered collection."""
        params: dict[str, Any] = {
            "limit": str(limit),
            "properties": ",".join(properties),
        }
        if after:
            params["after"] = after
        data = await self._request("GET", f"/objects/{object_type}", params=params)
        page = _to_page(data)
        logger.debug(
            "hubspot.page_listed",
            object_type=object_type,
            count=len(page.results),
            has_more=page.next_after is not None,
        )
        return page

    async def search_page(
        self,
        object_type: str,
        properties: list[str],
        modified_since: datetime,
        limit: int = 100,
        after: str | None = None,
    ) -> RemotePage:
        """POST /objects/{type}/search filtered to hs_lastmodifieddate >= modified_since."""
        body: dict[str, Any] = {
            "filterGroups": [
                {
                    "filters": [
                        {
                            "propertyName": LAST_MODIFIED_PROPERTY,
                            "operator": "GTE",
                            "value": str(int(modified_since.timestamp() * 1000)),
                        }
                    ]
                }
            ],
            "properties": properties,
            "limit": limit,
        }
        if after:
            body["after"] = after
        data = await self._request("POST", f"/objects/{object_type}/search", json=body)
        return _to_page(data)

    async def batch_read_associations(
        self,
        from_type: str,
        to_type: str,
        ids: list[str],
    ) -> dict[str, list[str]]:
        """POST /associations/{from}/{to}/batch/read -- child ids per parent id."""
        data = await self._request(
            "POST",
            f"/associations/{from_type}/{to_type}/batch/read",
            json={"inputs": [{"id": i} for i in ids]},
        )
        associations: dict[str, list[str]] = {}
        for item in data.get("results") or []:
            parent_id = (item.get("from") or {}).get("id")
            if parent_id is None:
                continue
            associations[str(parent_id)] = [str(t["id"]) for t in item.get("to") or [] if "id" in t]
        return associations
