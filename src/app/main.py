"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and sync engine initialization, and the v1 API
router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the sync engine; drain on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── CRM Sync Engine ──────────────────────────────────────────────────
    # Without HubSpot credentials the API still starts; sync endpoints 503.
    app.state.hubspot_client = None
    app.state.sync_orchestrator = None
    app.state.sync_scheduler = None

    if settings.HUBSPOT_API_KEY:
        from src.app.crm_sync.client import HubSpotClient
        from src.app.crm_sync.orchestrator import build_orchestrator
        from src.app.crm_sync.scheduler import SyncScheduler

        hubspot_client = HubSpotClient(
            api_key=settings.HUBSPOT_API_KEY,
            base_url=settings.HUBSPOT_BASE_URL,
            timeout=settings.HUBSPOT_TIMEOUT_SECONDS,
        )
        orchestrator = build_orchestrator(settings, hubspot_client, get_session)
        app.state.hubspot_client = hubspot_client
        app.state.sync_orchestrator = orchestrator

        if settings.SYNC_SCHEDULE_ENABLED:
            scheduler = SyncScheduler(
                orchestrator,
                interval_seconds=settings.SYNC_SCHEDULE_INTERVAL_SECONDS,
                max_age_hours=settings.SYNC_MAX_AGE_HOURS,
            )
            scheduler.start()
            app.state.sync_scheduler = scheduler

        log.info(
            "crm_sync.initialized",
            schedule_enabled=settings.SYNC_SCHEDULE_ENABLED,
            max_age_hours=settings.SYNC_MAX_AGE_HOURS,
        )
    else:
        log.warning("crm_sync.not_configured", reason="HUBSPOT_API_KEY not set")

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()

    orchestrator = getattr(app.state, "sync_orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()

    hubspot_client = getattr(app.state, "hubspot_client", None)
    if hubspot_client is not None:
        await hubspot_client.aclose()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Replica API",
        version="0.1.0",
        description="Local replica of HubSpot contacts, companies and deals",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, sync)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
