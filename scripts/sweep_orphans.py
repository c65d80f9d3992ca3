#!/usr/bin/env python3
"""
Staged Object Orphan Sweeper

Retries deletion of staged objects whose cleanup failed (state = orphaned)
and of uploads that were never consumed. Run from cron.

Usage:
    # Sweep orphans plus uploads older than 24 hours (default)
    python3 scripts/sweep_orphans.py

    # Only objects already marked orphaned
    python3 scripts/sweep_orphans.py --stale-hours 0

    # List what would be swept without deleting
    python3 scripts/sweep_orphans.py --dry-run
"""

import argparse
import asyncio
import os
import sys
from datetime import UTC, datetime, timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.api.dependencies import close_object_store, get_object_store  # noqa: E402
from app.config import settings  # noqa: E402
from app.db.session import close_engines, get_session  # noqa: E402
from app.observability import get_logger, setup_logging  # noqa: E402
from app.services.stores import SqlStagedObjectRegistry  # noqa: E402
from app.services.transfers import TransferOrchestrator  # noqa: E402

logger = get_logger("sweep_orphans")


async def sweep(stale_hours: float, limit: int, dry_run: bool) -> int:
    """Run one sweep. Returns the number of objects that could not be deleted."""
    stale_before = datetime.now(UTC) - timedelta(hours=stale_hours) if stale_hours > 0 else None

    try:
        async with get_session() as session:
            registry = SqlStagedObjectRegistry(session)

            if dry_run:
                records = await registry.list_orphans(stale_before=stale_before, limit=limit)
                for record in records:
                    logger.info(
                        "orphan_candidate",
                        key=record.key,
                        state=record.state.value,
                        purpose=record.purpose.value,
                        created_at=record.created_at.isoformat(),
                    )
                return 0

            orchestrator = TransferOrchestrator(
                objects=get_object_store(),
                registry=registry,
                threshold_bytes=settings.inline_threshold_bytes,
                storage_timeout_seconds=settings.storage_timeout_seconds,
            )
            report = await orchestrator.sweep(stale_before=stale_before, limit=limit)
            return report.failed
    finally:
        await close_object_store()
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Delete orphaned and abandoned staged objects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--stale-hours",
        type=float,
        default=24.0,
        help="Also sweep uploads older than this many hours (0 disables)",
    )
    parser.add_argument("--limit", type=int, default=500, help="Maximum objects per run")
    parser.add_argument("--dry-run", action="store_true", help="List candidates only")

    args = parser.parse_args()
    setup_logging()

    failed = asyncio.run(sweep(args.stale_hours, args.limit, args.dry_run))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
