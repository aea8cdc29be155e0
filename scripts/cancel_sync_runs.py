#!/usr/bin/env python3
"""Emergency: cancel every in-flight sync run.

Usage:
    uv run python scripts/cancel_sync_runs.py

Marks all sync_runs rows still in "running" state as cancelled and clears
the sync_in_progress flags in sync_metadata. Acts on the persisted records
directly; it does not stop a sync task running in another process, whose
in-memory lock is released when that task ends.

Reads DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def run() -> int:
    from src.app.api.middleware.logging import configure_structlog
    from src.app.core.database import close_db, get_session, init_db
    from src.app.crm_sync.runs import SyncRunRepository

    configure_structlog()
    await init_db()
    try:
        cancelled = await SyncRunRepository(get_session).cancel_inflight()
    finally:
        await close_db()

    print(f"Cancelled {cancelled} running sync run(s)")
    return 0


def main() -> None:
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
