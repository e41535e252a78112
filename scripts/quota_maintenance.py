#!/usr/bin/env python3
"""Run quota ledger maintenance and drain the quota outbox on demand.

The service runs both steps in its background loop; this script is for
operators who need them now (e.g. after restoring a backup or when the
service is stopped).

Usage:
    python scripts/quota_maintenance.py
    python scripts/quota_maintenance.py --retention-days 60 --vacuum-interval-days 0
    python scripts/quota_maintenance.py --skip-outbox
    python scripts/quota_maintenance.py --show-usage

Environment:
    DATABASE_URL: action log store (required unless --skip-outbox)
    QUOTA_DATABASE_URL: quota store (defaults to DATABASE_URL)
"""

import argparse
import asyncio
import sys
from datetime import timedelta

from playlist_manager.config import get_database_url, get_quota_database_url
from playlist_manager.constants import GLOBAL_SCOPE
from playlist_manager.database import create_engine_for_url, create_session_factory
from playlist_manager.services.bulk_orchestrator import BulkOrchestrator
from playlist_manager.services.quota_ledger import QuotaLedger
from playlist_manager.utils.logging import configure_logging


async def _no_provider(user_id: str) -> None:
    return None


async def run(args: argparse.Namespace) -> int:
    quota_url = get_quota_database_url()
    if not quota_url:
        print("ERROR: QUOTA_DATABASE_URL or DATABASE_URL must be set")
        return 1

    quota_engine = create_engine_for_url(quota_url)
    ledger = QuotaLedger(quota_engine)
    try:
        report = await ledger.run_maintenance(
            retention_days=args.retention_days,
            vacuum_interval_days=args.vacuum_interval_days,
        )
        print(f"Pruned rows: {report.pruned_rows}")
        print(f"Vacuumed:    {report.vacuumed}")

        if not args.skip_outbox:
            engine = create_engine_for_url(get_database_url())
            try:
                orchestrator = BulkOrchestrator(
                    create_session_factory(engine), ledger, provider_factory=_no_provider
                )
                recorded = await orchestrator.flush_pending_quota(
                    older_than=timedelta(minutes=args.outbox_grace_minutes)
                )
                print(f"Outbox actions recorded: {recorded}")
            finally:
                await engine.dispose()

        if args.show_usage:
            snapshot = await ledger.get_today_quota()
            print(
                f"Today ({ledger.day_key().isoformat()}, {GLOBAL_SCOPE}): "
                f"used={snapshot.used} remain={snapshot.remain} budget={snapshot.budget} "
                f"reset_at={snapshot.reset_at.isoformat()}"
            )
    finally:
        await quota_engine.dispose()

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run quota ledger maintenance")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Delete usage rows older than this many days (default: RETENTION_DAYS or 35)",
    )
    parser.add_argument(
        "--vacuum-interval-days",
        type=int,
        default=None,
        help="Compact if the last compaction is this many days old; 0 forces it "
        "(default: VACUUM_INTERVAL_DAYS or 7)",
    )
    parser.add_argument(
        "--skip-outbox",
        action="store_true",
        help="Do not re-apply unrecorded action costs",
    )
    parser.add_argument(
        "--outbox-grace-minutes",
        type=int,
        default=5,
        help="Only re-apply costs of actions at least this old (default: 5)",
    )
    parser.add_argument(
        "--show-usage",
        action="store_true",
        help="Print today's global usage after maintenance",
    )
    args = parser.parse_args()

    configure_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
