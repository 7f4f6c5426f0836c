"""
scheduled jobs, run from cron:

    python jobs.py release      # PENDING -> AVAILABLE after the hold period
    python jobs.py payouts      # pay every affiliate with an AVAILABLE balance
    python jobs.py reconcile    # settle payouts whose transfer outcome is unknown
    python jobs.py outbox       # deliver queued notifications
    python jobs.py init-db      # apply db/schema.sql
"""

import argparse
import signal
import sys
from typing import Any, Optional

from loguru import logger

from config import Settings, get_settings
from db.db import Database
from ledger_db import release_matured_db
from logging_config import setup_logging
from outbox_db import deliver_pending_notifications
from payout_db import reconcile_payouts_db, run_payout_cycle_db
from transfers import TransferClient, build_transfer_client


class StopFlag:
    """set by SIGTERM/SIGINT; the payout cycle checks it between affiliates."""

    def __init__(self):
        self.stopped = False

    def __call__(self) -> bool:
        return self.stopped

    def stop(self, signum, frame) -> None:
        logger.warning("received signal {}, finishing the current affiliate", signum)
        self.stopped = True


def run_release(db: Database) -> Any:
    return release_matured_db(db)


def run_payouts(
    db: Database,
    settings: Settings,
    transfer_client: TransferClient,
    should_stop: Optional[StopFlag] = None,
) -> Any:
    payouts = run_payout_cycle_db(db, settings, transfer_client, should_stop=should_stop)
    return {
        "payouts": len(payouts),
        "sent": sum(1 for p in payouts if p["status"] == "SENT"),
        "failed": sum(1 for p in payouts if p["status"] == "FAILED"),
    }


def run_reconcile(db: Database, settings: Settings, transfer_client: TransferClient) -> Any:
    return reconcile_payouts_db(db, settings, transfer_client)


def run_outbox(db: Database, settings: Settings) -> Any:
    return deliver_pending_notifications(db, max_attempts=settings.outbox_max_attempts)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="affiliate ledger jobs")
    parser.add_argument("job", choices=["release", "payouts", "reconcile", "outbox", "init-db"])
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    db = Database(settings.database_dsn)

    if args.job == "init-db":
        db.apply_schema()
        return 0

    if args.job == "release":
        summary = run_release(db)
    elif args.job == "payouts":
        stop = StopFlag()
        signal.signal(signal.SIGTERM, stop.stop)
        signal.signal(signal.SIGINT, stop.stop)
        summary = run_payouts(db, settings, build_transfer_client(settings), should_stop=stop)
    elif args.job == "reconcile":
        summary = run_reconcile(db, settings, build_transfer_client(settings))
    else:
        summary = run_outbox(db, settings)

    logger.info("job {} finished: {}", args.job, summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
