"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry for the FastAPI app
- track_sync_run(): Context manager for per-entity sync run metrics
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

crm_sync_runs_total = Counter(
    "crm_sync_runs_total",
    "Total CRM sync runs by outcome",
    ["entity_type", "mode", "outcome"],
)

crm_sync_duration_seconds = Histogram(
    "crm_sync_duration_seconds",
    "CRM sync run duration in seconds",
    ["entity_type", "mode"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)

crm_sync_records_total = Counter(
    "crm_sync_records_total",
    "Replica records written by CRM syncs",
    ["entity_type", "result"],
)

crm_sync_in_progress = Gauge(
    "crm_sync_in_progress",
    "Whether a sync is currently running for the entity type",
    ["entity_type"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helper ─────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(
    entity_type: str,
    mode: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync_run("contacts", "full") as tracker:
            result = await do_sync()
            tracker["outcome"] = "success" if result.success else "failed"
            tracker["inserted"] = result.inserted

    Automatically records:
    - In-progress gauge for the entity type while the block runs
    - Duration in histogram
    - Run count by outcome ("error" if the block raises)
    - Inserted/modified/errored record counts (if set in tracker dict)
    """
    tracker: dict[str, Any] = {
        "outcome": "success",
        "inserted": 0,
        "modified": 0,
        "errors": 0,
    }
    crm_sync_in_progress.labels(entity_type=entity_type).set(1)
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["outcome"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        crm_sync_in_progress.labels(entity_type=entity_type).set(0)

        crm_sync_runs_total.labels(
            entity_type=entity_type,
            mode=mode,
            outcome=tracker["outcome"],
        ).inc()

        crm_sync_duration_seconds.labels(
            entity_type=entity_type,
            mode=mode,
        ).observe(duration)

        for result in ("inserted", "modified", "errors"):
            if tracker.get(result):
                crm_sync_records_total.labels(
                    entity_type=entity_type,
                    result=result,
                ).inc(tracker[result])


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
