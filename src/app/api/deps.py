"""FastAPI dependencies for the sync API.

These dependencies are used in endpoint function signatures to inject the
sync orchestrator wired at startup and to guard admin-only operations.
"""

from __future__ import annotations

import secrets

from fastapi import Header, HTTPException, Request, status

from src.app.config import get_settings
from src.app.crm_sync.orchestrator import SyncOrchestrator


async def require_admin(x_api_key: str | None = Header(default=None)) -> None:
    """Validate the X-API-Key header against ADMIN_API_KEY.

    An empty ADMIN_API_KEY disables the check (local development).

    Raises:
        HTTPException(401): If the key is missing or does not match.
    """
    expected = get_settings().ADMIN_API_KEY
    if not expected:
        return
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM sync not initialized",
        )
    return orchestrator
