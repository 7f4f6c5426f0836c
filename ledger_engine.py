from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from errors import InvalidTransition
from events import REVENUE_EVENT_TYPES

PENDING = "PENDING"
AVAILABLE = "AVAILABLE"
PAID = "PAID"
REVERSED = "REVERSED"

STATUSES = (PENDING, AVAILABLE, PAID, REVERSED)

# PAID and REVERSED are terminal
ALLOWED_TRANSITIONS = {
    PENDING: {AVAILABLE, REVERSED},
    AVAILABLE: {PAID, REVERSED},
    PAID: set(),
    REVERSED: set(),
}

PAYOUT_CREATED = "CREATED"
PAYOUT_SENT = "SENT"
PAYOUT_FAILED = "FAILED"

PAYOUT_TRANSITIONS = {
    PAYOUT_CREATED: {PAYOUT_SENT, PAYOUT_FAILED},
    PAYOUT_SENT: set(),
    # FAILED -> SENT only for payouts awaiting reconciliation
    PAYOUT_FAILED: {PAYOUT_SENT},
}


@dataclass
class LedgerEntry:
    id: int
    affiliate_id: int
    source_event_id: str
    event_type: str
    tier: str
    amount_cents: int
    status: str
    base_amount_cents: Optional[int] = None
    available_at: Optional[datetime] = None
    reversal_of_id: Optional[int] = None
    payout_id: Optional[int] = None
    carried_debt: bool = False

    @property
    def is_credit(self) -> bool:
        return self.event_type in REVENUE_EVENT_TYPES and self.amount_cents > 0

    @property
    def is_settled(self) -> bool:
        """paid out, or claimed by a payout that is still in flight."""
        return self.status == PAID or self.payout_id is not None


@dataclass(frozen=True)
class ReversalPlan:
    original_id: int
    affiliate_id: int
    tier: str
    amount_cents: int  # negative
    status: str
    available_at: Optional[datetime]
    carried_debt: bool
    reverse_original: bool


def assert_transition(current: str, target: str, entity: str = "ledger entry") -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(entity, current, target)


def assert_payout_transition(current: str, target: str, needs_reconciliation: bool = False) -> None:
    allowed = PAYOUT_TRANSITIONS.get(current, set())
    if target not in allowed or (current == PAYOUT_FAILED and not needs_reconciliation):
        raise InvalidTransition("payout", current, target)


def available_at_for(created_at: datetime, hold_days: int) -> datetime:
    return created_at + timedelta(days=hold_days)


def proportional_cents(original_cents: int, refund_cents: int, base_cents: int) -> int:
    if base_cents <= 0:
        return original_cents
    share = Decimal(original_cents) * Decimal(refund_cents) / Decimal(base_cents)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def plan_reversal(
    entries: Iterable[LedgerEntry],
    refund_cents: Optional[int],
    now: datetime,
) -> List[ReversalPlan]:
    """
    work out the offsetting rows for one refund/chargeback of a source event.

    entries: the source event's credit rows and every offset already
    written against them (by any earlier refund or chargeback).
    refund_cents: amount refunded by the gateway; None means full reversal.

    a source event can be refunded several times; each refund is planned
    on its own and deduped by the caller on the refund's event id.

    per original credit row:
      - never reverse more than is still outstanding
      - unpaid + full + first reversal: flip original to REVERSED and write
        a REVERSED offset (the pair drops out of every balance)
      - unpaid partial: offset mirrors the original's status/available_at
        so both mature and pay out net
      - already paid (or held by a payout): offset is an AVAILABLE debt row
        against future payouts
    """
    entries = list(entries)
    reversed_by: Dict[int, List[LedgerEntry]] = {}
    for entry in entries:
        if entry.reversal_of_id is not None:
            reversed_by.setdefault(entry.reversal_of_id, []).append(entry)

    plans: List[ReversalPlan] = []
    for original in entries:
        if not original.is_credit:
            continue

        offsets = reversed_by.get(original.id, [])
        already = -sum(o.amount_cents for o in offsets)
        remaining = original.amount_cents - already
        if remaining <= 0:
            continue

        base = original.base_amount_cents
        if refund_cents is None or base is None or refund_cents >= base:
            target = remaining
        else:
            target = min(remaining, proportional_cents(original.amount_cents, refund_cents, base))
        if target <= 0:
            continue

        if original.is_settled:
            plans.append(
                ReversalPlan(
                    original_id=original.id,
                    affiliate_id=original.affiliate_id,
                    tier=original.tier,
                    amount_cents=-target,
                    status=AVAILABLE,
                    available_at=now,
                    carried_debt=True,
                    reverse_original=False,
                )
            )
        elif target == original.amount_cents and not offsets:
            assert_transition(original.status, REVERSED)
            plans.append(
                ReversalPlan(
                    original_id=original.id,
                    affiliate_id=original.affiliate_id,
                    tier=original.tier,
                    amount_cents=-target,
                    status=REVERSED,
                    available_at=None,
                    carried_debt=False,
                    reverse_original=True,
                )
            )
        else:
            plans.append(
                ReversalPlan(
                    original_id=original.id,
                    affiliate_id=original.affiliate_id,
                    tier=original.tier,
                    amount_cents=-target,
                    status=original.status,
                    available_at=original.available_at,
                    carried_debt=False,
                    reverse_original=False,
                )
            )
    return plans


def balances(rows: Iterable[Tuple[str, bool, int]]) -> Dict[str, int]:
    """
    pending / available / paid sums for one affiliate from
    (status, carried_debt, amount_cents) rows or partial sums.
    REVERSED rows cancel each other out and are left out.
    """
    totals = {PENDING: 0, AVAILABLE: 0, PAID: 0}
    debt = 0
    for status, carried_debt, amount in rows:
        if status in totals:
            totals[status] += int(amount)
        if carried_debt and status == AVAILABLE:
            debt += int(amount)
    return {
        "pending": totals[PENDING],
        "available": totals[AVAILABLE],
        "paid": totals[PAID],
        "net": totals[PENDING] + totals[AVAILABLE],
        "carried_debt": debt,
    }
