from typing import Any, Callable, Dict

from loguru import logger

from db.db import Database
from db.repositories import (
    claim_pending_notifications,
    mark_notification_failed,
    mark_notification_sent,
)

NotificationSink = Callable[[Dict[str, Any]], None]


def log_sink(notification: Dict[str, Any]) -> None:
    """default sink: write the intent to the log instead of emailing it."""
    logger.info(
        "notify affiliate {} [{}]: {}",
        notification["affiliate_id"],
        notification["kind"],
        notification["payload"],
    )


def deliver_pending_notifications(
    db: Database,
    sink: NotificationSink = log_sink,
    limit: int = 100,
    max_attempts: int = 5,
) -> Dict[str, int]:
    """
    drain the outbox written by ledger/payout transactions.
    only touches notification_outbox; financial rows are never affected
    by delivery failures.
    """
    summary = {"sent": 0, "failed": 0, "retry": 0}
    with db.connection() as conn:
        try:
            for notification in claim_pending_notifications(conn, limit):
                try:
                    sink(notification)
                except Exception as e:
                    give_up = notification["attempts"] + 1 >= max_attempts
                    mark_notification_failed(conn, notification["id"], repr(e), give_up)
                    summary["failed" if give_up else "retry"] += 1
                    logger.warning(
                        "delivery of notification {} failed (attempt {}): {}",
                        notification["id"],
                        notification["attempts"] + 1,
                        e,
                    )
                    continue
                mark_notification_sent(conn, notification["id"])
                summary["sent"] += 1
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return summary
