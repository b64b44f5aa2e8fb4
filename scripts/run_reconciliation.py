#!/usr/bin/env python3
"""
Ledger reconciliation job.

Run from cron (e.g. every 5 minutes). Each run:
- replays provisioning for paid orders whose subscription was never credited
- fails pending orders whose QR code has expired
- applies time-driven subscription transitions (expiry, grace period)

Usage:
  python scripts/run_reconciliation.py
  python scripts/run_reconciliation.py --replay-order INSPI1736937045123042137

Exit codes:
  0  all sweeps clean
  2  at least one paid order is still unprovisioned (needs attention)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add repo root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


logger = logging.getLogger(__name__)


async def run_job(replay_order: str | None) -> int:
    from quota_ledger.config import get_settings
    from quota_ledger.errors import LedgerError
    from quota_ledger.ledger import build_ledger
    from quota_ledger.observability.logging import OperationContext
    from quota_ledger.storage.database import get_ledger_db

    settings = get_settings()
    db = await get_ledger_db()

    try:
        ledger = build_ledger(settings, db)

        if replay_order:
            try:
                with OperationContext("provisioning_replay", order_id=replay_order):
                    subscription = await ledger.gateway.replay_provisioning(replay_order)
            except LedgerError as e:
                logger.error(f"Replay failed for {replay_order}: {e}")
                return 2

            logger.info(
                f"Replay complete for {replay_order}: user {subscription.user_id} "
                f"is {subscription.status.value} until {subscription.current_period_end}"
            )
            return 0

        with OperationContext("reconciliation_run"):
            report = await ledger.reconciliation.run_once()

        if not report.ok:
            logger.error(
                f"{len(report.replay_failures)} paid order(s) still unprovisioned: "
                f"{', '.join(report.replay_failures)}"
            )
            return 2
        return 0

    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run ledger reconciliation sweeps")
    parser.add_argument(
        "--replay-order",
        default=None,
        help="Only replay provisioning for this order id",
    )
    args = parser.parse_args()

    from quota_ledger.config import get_settings
    from quota_ledger.observability.logging import configure_logging

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )

    exit_code = asyncio.run(run_job(replay_order=args.replay_order))
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
