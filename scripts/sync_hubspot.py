#!/usr/bin/env python3
"""Run a HubSpot -> replica sync from the command line.

Usage:
    uv run python scripts/sync_hubspot.py
    uv run python scripts/sync_hubspot.py --incremental --max-age-hours 48
    uv run python scripts/sync_hubspot.py --limit 200

Prints the sync status before and after, then per-entity results and a
summary. Exits 0 only if every entity type synced successfully.

Reads HUBSPOT_API_KEY and DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


def print_status(title: str, status: dict) -> None:
    print(f"\n{title}")
    for entity_type, entity_status in status.items():
        last_full = entity_status.last_full_sync.isoformat() if entity_status.last_full_sync else "never"
        print(
            f"  {entity_type.value:<10} records={entity_status.total_records:<7} "
            f"synced={entity_status.status.synced:<7} pending={entity_status.status.pending:<7} "
            f"last_full_sync={last_full} needs_sync={entity_status.needs_sync}"
        )
        if entity_status.last_sync_error:
            print(f"             last error: {entity_status.last_sync_error}")


def print_results(results: dict) -> None:
    print("\nResults")
    for entity_type, result in results.items():
        state = "skipped" if result.skipped else ("ok" if result.success else "FAILED")
        print(
            f"  {entity_type.value:<10} {state:<8} inserted={result.inserted:<7} "
            f"modified={result.modified:<7} errors={result.errors:<5} "
            f"processed={result.total_records}"
        )
        for message in result.error_messages[:5]:
            print(f"             {message}")


async def run(args: argparse.Namespace) -> int:
    from src.app.api.middleware.logging import configure_structlog
    from src.app.config import get_settings
    from src.app.core.database import close_db, get_session, init_db
    from src.app.crm_sync.client import HubSpotClient
    from src.app.crm_sync.orchestrator import build_orchestrator
    from src.app.crm_sync.schemas import SyncSummary

    configure_structlog()
    settings = get_settings()
    if not settings.HUBSPOT_API_KEY:
        print("ERROR: HUBSPOT_API_KEY (or HUBSPOT_PRIVATE_APP_ACCESS_TOKEN) is not set")
        return 2

    await init_db()
    client = HubSpotClient(
        api_key=settings.HUBSPOT_API_KEY,
        base_url=settings.HUBSPOT_BASE_URL,
        timeout=settings.HUBSPOT_TIMEOUT_SECONDS,
    )
    orchestrator = build_orchestrator(settings, client, get_session)

    try:
        max_age_hours = args.max_age_hours or settings.SYNC_MAX_AGE_HOURS
        print_status("Status before sync", await orchestrator.get_sync_status(max_age_hours))

        if args.incremental:
            print(f"\nRunning incremental sync (look-back {max_age_hours}h when empty)...")
            results = await orchestrator.sync_all_incremental(max_age_hours)
        else:
            suffix = f" (limit {args.limit} per entity type)" if args.limit else ""
            print(f"\nRunning full sync{suffix}...")
            results = await orchestrator.sync_all(limit=args.limit)

        print_results(results)
        summary = SyncSummary.from_results(results)
        print(
            f"\nSummary: inserted={summary.total_inserted} modified={summary.total_modified} "
            f"errors={summary.total_errors} processed={summary.total_records} "
            f"success={summary.success}"
        )

        print_status("Status after sync", await orchestrator.get_sync_status(max_age_hours))
        return 0 if summary.success else 1
    finally:
        await orchestrator.aclose()
        await client.aclose()
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync HubSpot CRM records into the local replica")
    parser.add_argument("--incremental", action="store_true", help="Only fetch records modified since the replica watermark")
    parser.add_argument("--limit", type=int, default=None, help="Cap records per entity type (full sync only)")
    parser.add_argument("--max-age-hours", type=int, default=None, help="Freshness window / incremental look-back")
    args = parser.parse_args()

    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be a positive integer")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
