from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from db.db import Database
from db.repositories import (
    enqueue_notification,
    get_entries_for_source,
    insert_ledger_entry,
    lock_affiliates,
    mark_entry_reversed,
    release_matured_entries,
)
from ledger_engine import PENDING, available_at_for, plan_reversal
from referral_engine import Credit


def record_credits(
    conn: Connection,
    source_event_id: str,
    event_type: str,
    credits: List[Credit],
    hold_days: int,
    now: datetime,
) -> List[Dict[str, Any]]:
    """
    write one PENDING row per credited tier. must run inside the caller's
    transaction so a multi-tier credit lands all-or-nothing.

    replays hit the unique (source_event_id, affiliate_id, tier, event_type)
    constraint and are skipped.
    """
    available_at = available_at_for(now, hold_days)
    created: List[Dict[str, Any]] = []
    for credit in credits:
        entry_id = insert_ledger_entry(
            conn,
            affiliate_id=credit.affiliate_id,
            source_event_id=source_event_id,
            event_type=event_type,
            tier=credit.tier,
            amount_cents=credit.amount_cents,
            status=PENDING,
            available_at=available_at,
            share_pct=credit.share_pct,
            base_amount_cents=credit.base_amount_cents,
            discount_cents=credit.discount_cents,
        )
        if entry_id is None:
            logger.info(
                "ledger row for {} / affiliate {} / {} already exists",
                source_event_id,
                credit.affiliate_id,
                credit.tier,
            )
            continue

        row = {
            "id": entry_id,
            "affiliate_id": credit.affiliate_id,
            "tier": credit.tier,
            "amount_cents": credit.amount_cents,
            "status": PENDING,
        }
        created.append(row)
        enqueue_notification(
            conn,
            credit.affiliate_id,
            "commission_credited",
            {
                "ledger_entry_id": entry_id,
                "source_event_id": source_event_id,
                "event_type": event_type,
                "tier": credit.tier,
                "amount_cents": credit.amount_cents,
                "available_at": available_at.isoformat(),
            },
        )
    return created


def reverse_entries(
    conn: Connection,
    original_source_event_id: str,
    reversal_event_id: str,
    reversal_type: str,
    reason: str,
    refund_cents: Optional[int],
    now: datetime,
) -> List[Dict[str, Any]]:
    """
    offset every tier originally credited for `original_source_event_id`.

    offsets are keyed by the reversing event (`reversal_event_id`), so
    several refunds of one order each land, and a replayed one is skipped.
    the rows to charge back come from the ledger itself, never from a fresh
    attribution lookup, so later tree edits can't change who pays back.
    """
    preview = get_entries_for_source(conn, original_source_event_id)
    if not preview:
        logger.warning("no ledger rows to reverse for source event {}", original_source_event_id)
        return []

    # same lock order as the payout batcher: affiliate rows first
    lock_affiliates(conn, [e.affiliate_id for e in preview])
    entries = get_entries_for_source(conn, original_source_event_id, for_update=True)

    plans = plan_reversal(entries, refund_cents, now)
    created: List[Dict[str, Any]] = []
    for plan in plans:
        entry_id = insert_ledger_entry(
            conn,
            affiliate_id=plan.affiliate_id,
            source_event_id=reversal_event_id,
            event_type=reversal_type,
            tier=plan.tier,
            amount_cents=plan.amount_cents,
            status=plan.status,
            available_at=plan.available_at,
            carried_debt=plan.carried_debt,
            reversal_of_id=plan.original_id,
            original_source_event_id=original_source_event_id,
            reason=reason,
        )
        if entry_id is None:
            continue
        if plan.reverse_original:
            mark_entry_reversed(conn, plan.original_id)

        if plan.carried_debt:
            logger.warning(
                "affiliate {} already paid for {}, carrying {} cents forward as debt",
                plan.affiliate_id,
                original_source_event_id,
                -plan.amount_cents,
            )

        created.append(
            {
                "id": entry_id,
                "affiliate_id": plan.affiliate_id,
                "tier": plan.tier,
                "amount_cents": plan.amount_cents,
                "status": plan.status,
                "carried_debt": plan.carried_debt,
                "reversal_of_id": plan.original_id,
            }
        )
        enqueue_notification(
            conn,
            plan.affiliate_id,
            "commission_reversed",
            {
                "ledger_entry_id": entry_id,
                "source_event_id": original_source_event_id,
                "reversal_event_id": reversal_event_id,
                "event_type": reversal_type,
                "amount_cents": plan.amount_cents,
                "carried_debt": plan.carried_debt,
                "reason": reason,
            },
        )
    return created


def release_matured_db(db: Database, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    PENDING -> AVAILABLE for every row whose hold period has elapsed.
    """
    now = now or datetime.now(timezone.utc)
    with db.connection() as conn:
        try:
            released = release_matured_entries(conn, now)
            for row in released:
                enqueue_notification(
                    conn,
                    row["affiliate_id"],
                    "commission_available",
                    {"ledger_entry_id": row["id"], "amount_cents": row["amount_cents"]},
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    if released:
        logger.info("released {} ledger rows to AVAILABLE", len(released))
    return {"released": len(released), "entry_ids": [r["id"] for r in released]}
