"""
payout batcher.

per affiliate:
  1) claim tx: lock affiliate + AVAILABLE rows, sum, create the payout
     CREATED and mark the rows as held by it. committed before any money moves.
  2) one transfer call carrying the payout's idempotency key.
  3) settle tx: rows -> PAID and payout -> SENT, or payout -> FAILED.

a crash between 1 and 3 leaves a CREATED payout that reconcile_payouts_db
resolves against the transfer collaborator's own idempotency record.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from config import Settings
from db.db import Database
from db.repositories import (
    affiliates_with_available_entries,
    enqueue_notification,
    get_affiliate,
    get_available_entries_for_update,
    get_payout,
    get_payouts_to_reconcile,
    hold_entries,
    insert_payout,
    mark_held_entries_paid,
    release_held_entries,
    update_payout_status,
)
from errors import NotFound, TransferFailed
from ledger_engine import (
    PAYOUT_CREATED,
    PAYOUT_FAILED,
    PAYOUT_SENT,
    assert_payout_transition,
)
from payout_engine import PayoutAffiliate, new_idempotency_key, payable_entries, payout_skip_reason
from transfers import TransferClient, TransferResult


def run_payout_cycle_db(
    db: Database,
    settings: Settings,
    transfer_client: TransferClient,
    affiliate_id: Optional[int] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[Dict[str, Any]]:
    """
    pay out every affiliate with an AVAILABLE balance (or just `affiliate_id`).
    should_stop is polled between affiliates only, never mid-payout.
    """
    if affiliate_id is not None:
        affiliate_ids = [affiliate_id]
    else:
        with db.connection() as conn:
            affiliate_ids = affiliates_with_available_entries(conn)

    payouts: List[Dict[str, Any]] = []
    for aid in affiliate_ids:
        if should_stop is not None and should_stop():
            logger.info("payout cycle stopped before affiliate {}", aid)
            break
        try:
            payout = pay_affiliate_db(db, settings, transfer_client, aid)
        except Exception:
            # keep going with the remaining affiliates
            logger.exception("payout for affiliate {} aborted", aid)
            continue
        if payout is not None:
            payouts.append(payout)

    logger.info(
        "payout cycle done: {} payouts for {} candidate affiliates",
        len(payouts),
        len(affiliate_ids),
    )
    return payouts


def pay_affiliate_db(
    db: Database,
    settings: Settings,
    transfer_client: TransferClient,
    affiliate_id: int,
) -> Optional[Dict[str, Any]]:
    claimed = _claim(db, settings, affiliate_id)
    if claimed is None:
        return None
    payout, destination = claimed

    try:
        transfer = transfer_client.create_transfer(
            amount_cents=payout["amount_cents"],
            currency=payout["currency"],
            destination=destination,
            idempotency_key=payout["idempotency_key"],
            metadata={
                "affiliate_id": str(affiliate_id),
                "payout_id": str(payout["id"]),
                "commission_count": str(len(payout["entry_ids"])),
            },
        )
    except TransferFailed as e:
        logger.error(
            "transfer for payout {} (affiliate {}) failed: {} (ambiguous={})",
            payout["id"],
            affiliate_id,
            e,
            e.ambiguous,
        )
        return _settle_failed(db, payout, str(e), ambiguous=e.ambiguous)
    except Exception as e:
        # unknown client error: we cannot tell whether money moved
        logger.exception("unexpected transfer error for payout {}", payout["id"])
        return _settle_failed(db, payout, repr(e), ambiguous=True)

    return _settle_sent(db, payout, transfer.transfer_id)


def _claim(db: Database, settings: Settings, affiliate_id: int):
    with db.connection() as conn:
        try:
            affiliate = get_affiliate(conn, affiliate_id, for_update=True)
            if affiliate is None:
                raise NotFound(f"Affiliate {affiliate_id} not found")

            entries = payable_entries(get_available_entries_for_update(conn, affiliate_id))
            total = sum(e.amount_cents for e in entries)
            skip = payout_skip_reason(
                PayoutAffiliate(
                    id=affiliate["id"],
                    status=affiliate["status"],
                    payout_account_id=affiliate["payout_account_id"],
                    onboarding_completed=affiliate["onboarding_completed"],
                ),
                total,
                settings.min_payout_cents,
            )
            if skip is not None:
                conn.rollback()
                logger.info(
                    "skipping payout for affiliate {}: {} (balance {} cents)",
                    affiliate_id,
                    skip,
                    total,
                )
                return None

            entry_ids = [e.id for e in entries]
            payout = insert_payout(
                conn,
                affiliate_id=affiliate_id,
                amount_cents=total,
                currency=settings.currency,
                entry_ids=entry_ids,
                idempotency_key=new_idempotency_key(affiliate_id),
            )
            hold_entries(conn, entry_ids, payout["id"])
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "payout {} created for affiliate {}: {} cents over {} entries",
        payout["id"],
        affiliate_id,
        payout["amount_cents"],
        len(payout["entry_ids"]),
    )
    return payout, affiliate["payout_account_id"]


def _settle_sent(db: Database, payout: Dict[str, Any], transfer_id: str) -> Dict[str, Any]:
    with db.connection() as conn:
        try:
            current = get_payout(conn, payout["id"], for_update=True)
            assert_payout_transition(
                current["status"], PAYOUT_SENT, current["needs_reconciliation"]
            )
            paid = mark_held_entries_paid(conn, payout["id"])
            if paid != len(payout["entry_ids"]):
                raise RuntimeError(
                    f"payout {payout['id']} covers {len(payout['entry_ids'])} entries, {paid} were payable"
                )
            update_payout_status(
                conn,
                payout["id"],
                expected_status=current["status"],
                status=PAYOUT_SENT,
                transfer_id=transfer_id,
            )
            enqueue_notification(
                conn,
                payout["affiliate_id"],
                "payout_sent",
                {
                    "payout_id": payout["id"],
                    "amount_cents": payout["amount_cents"],
                    "transfer_id": transfer_id,
                },
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("payout {} sent as transfer {}", payout["id"], transfer_id)
    return {**payout, "status": PAYOUT_SENT, "transfer_id": transfer_id}


def _settle_failed(
    db: Database,
    payout: Dict[str, Any],
    reason: str,
    ambiguous: bool,
) -> Dict[str, Any]:
    """
    definitive failure: release the rows so the next cycle retries.
    ambiguous failure: keep them held until reconciliation knows the truth.
    """
    with db.connection() as conn:
        try:
            moved = update_payout_status(
                conn,
                payout["id"],
                expected_status=PAYOUT_CREATED,
                status=PAYOUT_FAILED,
                failure_reason=reason,
                needs_reconciliation=ambiguous,
            )
            if moved and not ambiguous:
                release_held_entries(conn, payout["id"])
            if moved:
                enqueue_notification(
                    conn,
                    payout["affiliate_id"],
                    "payout_failed",
                    {"payout_id": payout["id"], "amount_cents": payout["amount_cents"]},
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return {
        **payout,
        "status": PAYOUT_FAILED,
        "failure_reason": reason,
        "needs_reconciliation": ambiguous,
    }


def reconcile_payouts_db(
    db: Database,
    settings: Settings,
    transfer_client: TransferClient,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    settle payouts whose outcome is unknown: CREATED for too long (worker
    died mid-cycle) or FAILED after an ambiguous transfer error.

    candidates are read without locks and looked up at the transfer API
    outside any transaction. each one is then settled in its own short
    transaction, skipped if it moved in the meantime.
    """
    now = now or datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=settings.payout_stale_after_seconds)
    summary = {"sent": 0, "failed": 0, "unresolved": 0}

    with db.connection() as conn:
        candidates = get_payouts_to_reconcile(conn, stale_before)
        conn.commit()

    for candidate in candidates:
        try:
            transfer = transfer_client.find_transfer(candidate["idempotency_key"])
        except TransferFailed as e:
            logger.warning("cannot reconcile payout {} yet: {}", candidate["id"], e)
            summary["unresolved"] += 1
            continue

        outcome = _settle_reconciled(db, candidate, transfer)
        if outcome is not None:
            summary[outcome] += 1

    return summary


def _settle_reconciled(db: Database, candidate: Dict[str, Any], transfer: Optional[TransferResult]) -> Optional[str]:
    with db.connection() as conn:
        try:
            payout = get_payout(conn, candidate["id"], for_update=True)
            if (
                payout is None
                or payout["status"] != candidate["status"]
                or payout["needs_reconciliation"] != candidate["needs_reconciliation"]
            ):
                conn.rollback()
                logger.info("payout {} was settled elsewhere, skipping", candidate["id"])
                return None

            if transfer is not None:
                assert_payout_transition(payout["status"], PAYOUT_SENT, payout["needs_reconciliation"])
                mark_held_entries_paid(conn, payout["id"])
                update_payout_status(
                    conn,
                    payout["id"],
                    expected_status=payout["status"],
                    status=PAYOUT_SENT,
                    transfer_id=transfer.transfer_id,
                )
                outcome = "sent"
            else:
                update_payout_status(
                    conn,
                    payout["id"],
                    expected_status=payout["status"],
                    status=PAYOUT_FAILED,
                    failure_reason=payout["failure_reason"] or "no transfer found during reconciliation",
                )
                release_held_entries(conn, payout["id"])
                outcome = "failed"
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    if outcome == "sent":
        logger.info("payout {} reconciled as sent ({})", payout["id"], transfer.transfer_id)
    else:
        logger.info("payout {} reconciled as failed, entries released", payout["id"])
    return outcome
