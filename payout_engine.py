import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ledger_engine import AVAILABLE, LedgerEntry
from referral_engine import SUSPENDED

SKIP_NET_DEBT = "net_debt"
SKIP_BELOW_MINIMUM = "below_minimum"
SKIP_SUSPENDED = "suspended"
SKIP_NO_PAYOUT_ACCOUNT = "no_payout_account"
SKIP_ONBOARDING_INCOMPLETE = "onboarding_incomplete"


@dataclass(frozen=True)
class PayoutAffiliate:
    id: int
    status: str
    payout_account_id: Optional[str]
    onboarding_completed: bool


def payable_entries(entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
    """AVAILABLE rows that no other payout has claimed yet."""
    return [e for e in entries if e.status == AVAILABLE and e.payout_id is None]


def payout_skip_reason(
    affiliate: PayoutAffiliate,
    total_cents: int,
    min_payout_cents: int,
) -> Optional[str]:
    """
    None when the affiliate should be paid `total_cents` now, otherwise why not.
    a skipped balance simply carries forward to the next cycle.
    """
    if total_cents <= 0:
        return SKIP_NET_DEBT
    if total_cents < min_payout_cents:
        return SKIP_BELOW_MINIMUM
    if affiliate.status == SUSPENDED:
        return SKIP_SUSPENDED
    if not affiliate.payout_account_id:
        return SKIP_NO_PAYOUT_ACCOUNT
    if not affiliate.onboarding_completed:
        return SKIP_ONBOARDING_INCOMPLETE
    return None


def new_idempotency_key(affiliate_id: int) -> str:
    return f"affpayout_{affiliate_id}_{uuid.uuid4().hex}"
