from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from attribution_db import load_attribution
from config import Settings
from db.db import Database
from db.repositories import (
    claim_event,
    get_affiliate_statuses,
    get_event_amount,
    get_orphan_reversals,
    lock_source_event,
    set_event_outcome,
)
from errors import DuplicateEvent, UnknownAttribution
from events import REVENUE_EVENT_TYPES, InboundEvent
from ledger_db import record_credits, reverse_entries
from referral_engine import apply_suspension_policy, compute_credits, resolve_tiers


def handle_event_db(
    db: Database,
    settings: Settings,
    event: InboundEvent,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    idempotent entry point for payment webhooks.

    the whole event (dedupe claim + every ledger row it produces) is one
    transaction: any failure rolls all of it back and the webhook can be
    redelivered safely.

    a revenue event and its refunds/chargebacks serialize on the revenue
    event id. a refund that lands first is kept as `nothing_to_reverse`
    and applied when its revenue event is recorded.
    """
    now = now or datetime.now(timezone.utc)
    with db.connection() as conn:
        try:
            result = _handle_event_in_tx(conn, settings, event, now)
            conn.commit()
        except DuplicateEvent:
            conn.rollback()
            logger.info("duplicate delivery of {} ({}), ignoring", event.event_id, event.type)
            return {
                "status": "duplicate",
                "event_id": event.event_id,
                "type": event.type,
                "entries": [],
                "reversals": [],
            }
        except Exception:
            conn.rollback()
            logger.exception("failed to ingest event {} ({})", event.event_id, event.type)
            raise

    logger.info(
        "event {} ({}) {} with {} ledger rows",
        event.event_id,
        event.type,
        result["status"],
        len(result["entries"]) + len(result["reversals"]),
    )
    return result


def _handle_event_in_tx(
    conn: Connection,
    settings: Settings,
    event: InboundEvent,
    now: datetime,
) -> Dict[str, Any]:
    source_id = event.reversed_event_id if event.is_reversal else event.event_id
    lock_source_event(conn, source_id)

    # 1) idempotent claim of (event_id, type)
    claimed = claim_event(
        conn,
        event.event_id,
        event.type,
        event.account_id,
        event.amount_cents,
        original_event_id=source_id if event.is_reversal else None,
    )
    if not claimed:
        raise DuplicateEvent(event.event_id, event.type)

    if event.is_reversal:
        return _reverse(conn, event, now)

    # 2) stored attribution, not recomputed
    try:
        attribution = load_attribution(conn, event.account_id, now)
    except UnknownAttribution as e:
        logger.warning("unattributed revenue event {}: {}", event.event_id, e)
        set_event_outcome(conn, event.event_id, event.type, "unattributed")
        return _result("unattributed", event, [])

    meta = event.metadata
    if meta is not None:
        resolved_top = resolve_tiers(attribution, event.type, settings.rates)[0].tier
        if meta.tier != resolved_top and meta.tier != "PARENT":
            logger.warning(
                "event {} says tier {} but attribution resolves to {}, using attribution",
                event.event_id,
                meta.tier,
                resolved_top,
            )

    # 3) cents per tier
    credits = compute_credits(
        attribution,
        event.type,
        event.amount_cents,
        settings.rates,
        discount_share_pct=meta.discount_share_pct if meta is not None else None,
        sides=event.attributed_sides,
    )

    statuses = get_affiliate_statuses(conn, [c.affiliate_id for c in credits])
    credits, dropped = apply_suspension_policy(credits, statuses, settings.accrue_for_suspended)
    for credit in dropped:
        logger.warning(
            "affiliate {} is suspended, not crediting {} cents for {}",
            credit.affiliate_id,
            credit.amount_cents,
            event.event_id,
        )

    # 4) ledger rows
    entries = record_credits(conn, event.event_id, event.type, credits, settings.hold_days, now)
    set_event_outcome(conn, event.event_id, event.type, "applied")

    # 5) refunds/chargebacks that arrived before this event
    reversals = _apply_early_reversals(conn, event, now) if entries else []
    return _result("applied", event, entries, reversals)


def _reverse(conn: Connection, event: InboundEvent, now: datetime) -> Dict[str, Any]:
    source_id = event.reversed_event_id
    refund_cents: Optional[int] = event.amount_cents
    original_amount = get_event_amount(conn, source_id, REVENUE_EVENT_TYPES)
    if original_amount is not None and event.amount_cents >= original_amount:
        refund_cents = None

    entries = reverse_entries(
        conn,
        source_id,
        event.event_id,
        event.type,
        reason=f"{event.type.lower()} {event.event_id}",
        refund_cents=refund_cents,
        now=now,
    )
    outcome = "applied" if entries else "nothing_to_reverse"
    set_event_outcome(conn, event.event_id, event.type, outcome)
    return _result(outcome, event, entries)


def _apply_early_reversals(conn: Connection, event: InboundEvent, now: datetime) -> List[Dict[str, Any]]:
    applied: List[Dict[str, Any]] = []
    for orphan in get_orphan_reversals(conn, event.event_id):
        refund_cents: Optional[int] = orphan["amount_cents"]
        if orphan["amount_cents"] >= event.amount_cents:
            refund_cents = None

        entries = reverse_entries(
            conn,
            event.event_id,
            orphan["event_id"],
            orphan["event_type"],
            reason=f"{orphan['event_type'].lower()} {orphan['event_id']}",
            refund_cents=refund_cents,
            now=now,
        )
        if not entries:
            continue
        set_event_outcome(conn, orphan["event_id"], orphan["event_type"], "applied")
        logger.info(
            "{} {} arrived before {}, applied with {} ledger rows",
            orphan["event_type"],
            orphan["event_id"],
            event.event_id,
            len(entries),
        )
        applied.extend(entries)
    return applied


def _result(status: str, event: InboundEvent, entries, reversals=None) -> Dict[str, Any]:
    return {
        "status": status,
        "event_id": event.event_id,
        "type": event.type,
        "entries": entries,
        "reversals": reversals or [],
    }
