from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from commission_engine import (
    business_subscription_commission,
    parent_commission,
    user_transaction_commission,
)
from config import CommissionRates
from errors import AffiliateTreeError
from events import DIRECT, INVOICE_PAID, ORDER_PAID, PARENT, SUB

# main affiliate -> sub affiliate, nothing deeper
MAX_TREE_DEPTH = 2

SOURCE_LINK = "LINK"
SOURCE_PROMO_CODE = "PROMO_CODE"

ACTIVE = "ACTIVE"
SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class CustomRates:
    """
    negotiated shares for one affiliate, as fractions. None keeps the global
    rate. business_pct/user_pct replace the affiliate's own DIRECT or SUB
    share, the parent_* fields replace what its parent earns on its sales.
    """

    business_pct: Optional[Decimal] = None
    parent_business_pct: Optional[Decimal] = None
    user_pct: Optional[Decimal] = None
    parent_user_pct: Optional[Decimal] = None


@dataclass(frozen=True)
class Attribution:
    """
    the once-computed answer to "who gets credited for this account".
    the parent is a snapshot taken at attribution time, later tree edits
    don't move existing attributions.
    """

    account_id: str
    affiliate_id: int
    parent_affiliate_id: Optional[int]
    has_l2: bool
    source: str
    starts_at: datetime
    ends_at: datetime
    promo_code_id: Optional[int] = None
    discount_share_pct: int = 0
    custom_rates: CustomRates = field(default_factory=CustomRates)

    def is_active(self, at: datetime) -> bool:
        return self.starts_at <= at <= self.ends_at

    @property
    def credits_parent(self) -> bool:
        return self.has_l2 and self.parent_affiliate_id is not None


@dataclass(frozen=True)
class TierShare:
    affiliate_id: int
    tier: str
    share_pct: Decimal


@dataclass(frozen=True)
class Credit:
    affiliate_id: int
    tier: str
    share_pct: Decimal
    amount_cents: int
    base_amount_cents: int
    discount_cents: int = 0


def check_parent_assignment(
    child_id: int,
    parent_id: int,
    parent_of: Callable[[int], Optional[int]],
    child_has_subs: bool = False,
) -> None:
    """
    validate making `parent_id` the parent of `child_id`.
    rules:
      - an affiliate cannot be its own parent
      - the new edge must NOT create a cycle
      - the tree never gets deeper than MAX_TREE_DEPTH
    parent_of: lookup returning an affiliate's current parent (or None).
    """
    if parent_id == child_id:
        raise AffiliateTreeError(f"Affiliate {child_id} cannot be its own parent.")

    # walk UP from the proposed parent, we must never meet the child
    current: Optional[int] = parent_id
    seen = set()
    while current is not None:
        if current == child_id:
            raise AffiliateTreeError(
                f"Making {parent_id} the parent of {child_id} would create a cycle."
            )
        if current in seen:
            raise AffiliateTreeError(f"Affiliate tree already contains a cycle at {current}.")
        seen.add(current)
        current = parent_of(current)

    if len(seen) >= MAX_TREE_DEPTH:
        raise AffiliateTreeError(
            f"Affiliate {parent_id} is already a sub-affiliate and cannot have subs of its own."
        )
    if child_has_subs:
        raise AffiliateTreeError(
            f"Affiliate {child_id} has sub-affiliates and cannot become a sub-affiliate."
        )


def get_chain(
    affiliate_id: int,
    parent_of: Callable[[int], Optional[int]],
    max_levels: int = MAX_TREE_DEPTH,
) -> List[Optional[int]]:
    """
    [affiliate, parent, ...] up to max_levels, padded with None.
    """
    chain: List[Optional[int]] = [affiliate_id]
    current = affiliate_id
    while len(chain) < max_levels:
        current = parent_of(current)
        if current is None:
            break
        chain.append(current)

    chain.extend([None] * (max_levels - len(chain)))
    return chain


def build_attribution(
    account_id: str,
    affiliate_id: int,
    parent_of: Callable[[int], Optional[int]],
    now: datetime,
    window_days: int,
    source: str = SOURCE_LINK,
    promo_code_id: Optional[int] = None,
    discount_share_pct: int = 0,
    has_l2: Optional[bool] = None,
    custom_rates: Optional[CustomRates] = None,
) -> Attribution:
    _, parent_id = get_chain(affiliate_id, parent_of)
    if has_l2 is None:
        has_l2 = parent_id is not None
    return Attribution(
        account_id=account_id,
        affiliate_id=affiliate_id,
        parent_affiliate_id=parent_id,
        has_l2=has_l2,
        source=source,
        starts_at=now,
        ends_at=now + timedelta(days=window_days),
        promo_code_id=promo_code_id,
        discount_share_pct=discount_share_pct,
        custom_rates=custom_rates or CustomRates(),
    )


def check_custom_rates(custom: CustomRates, rates: CommissionRates, is_sub: bool) -> CustomRates:
    """
    every share within [0, 1], and the affiliate's own share plus its
    parent's never more than the whole base.
    """
    for name in ("business_pct", "parent_business_pct", "user_pct", "parent_user_pct"):
        value = getattr(custom, name)
        if value is not None and (value < 0 or value > 1):
            raise ValueError(f"{name} must be between 0 and 1")

    effective = _apply_custom_rates(rates, custom, is_sub)
    own_business = effective.sub_business_pct if is_sub else effective.direct_business_pct
    own_user = effective.sub_user_pct if is_sub else effective.direct_user_pct
    if own_business + effective.parent_business_pct > 1:
        raise ValueError("business shares of affiliate and parent exceed 100%")
    if own_user + effective.parent_user_pct > 1:
        raise ValueError("user transaction shares of affiliate and parent exceed 100%")
    return custom


def _apply_custom_rates(rates: CommissionRates, custom: CustomRates, is_sub: bool) -> CommissionRates:
    own = ("sub_business_pct", "sub_user_pct") if is_sub else ("direct_business_pct", "direct_user_pct")
    overrides = {
        own[0]: custom.business_pct,
        own[1]: custom.user_pct,
        "parent_business_pct": custom.parent_business_pct,
        "parent_user_pct": custom.parent_user_pct,
    }
    update = {k: v for k, v in overrides.items() if v is not None}
    return rates.model_copy(update=update) if update else rates


def effective_rates(attribution: Attribution, rates: CommissionRates) -> CommissionRates:
    """global rates with the attribution's custom snapshot laid over them."""
    return _apply_custom_rates(rates, attribution.custom_rates, attribution.credits_parent)


def resolve_tiers(attribution: Attribution, event_type: str, rates: CommissionRates) -> List[TierShare]:
    """
    ordered tier list for one revenue event.
      - no (credited) parent: [DIRECT]
      - parent credited:      [SUB, PARENT]
    """
    rates = effective_rates(attribution, rates)
    if event_type == INVOICE_PAID:
        direct_pct, sub_pct, parent_pct = (
            rates.direct_business_pct,
            rates.sub_business_pct,
            rates.parent_business_pct,
        )
    elif event_type == ORDER_PAID:
        direct_pct, sub_pct, parent_pct = (
            rates.direct_user_pct,
            rates.sub_user_pct,
            rates.parent_user_pct,
        )
    else:
        raise ValueError(f"{event_type} is not a revenue event")

    if not attribution.credits_parent:
        return [TierShare(attribution.affiliate_id, DIRECT, direct_pct)]

    return [
        TierShare(attribution.affiliate_id, SUB, sub_pct),
        TierShare(attribution.parent_affiliate_id, PARENT, parent_pct),
    ]


def compute_credits(
    attribution: Attribution,
    event_type: str,
    amount_cents: int,
    rates: CommissionRates,
    discount_share_pct: Optional[int] = None,
    sides: int = 1,
) -> List[Credit]:
    """
    turn the resolved tiers into cent amounts.
    discount_share_pct: the share recorded on the event at checkout time;
    falls back to the attribution's snapshot.
    """
    if discount_share_pct is None:
        discount_share_pct = attribution.discount_share_pct
    rates = effective_rates(attribution, rates)

    credits: List[Credit] = []
    for share in resolve_tiers(attribution, event_type, rates):
        discount = 0
        if share.tier == PARENT:
            amount = parent_commission(amount_cents, event_type, sides, rates)
        elif event_type == INVOICE_PAID:
            split = business_subscription_commission(
                amount_cents, discount_share_pct, share.tier == SUB, rates
            )
            amount = split["final_affiliate_commission_cents"]
            discount = split["discount_cents"]
        else:
            amount = user_transaction_commission(amount_cents, sides, share.tier == SUB, rates)

        if amount <= 0:
            continue
        credits.append(
            Credit(
                affiliate_id=share.affiliate_id,
                tier=share.tier,
                share_pct=share.share_pct,
                amount_cents=amount,
                base_amount_cents=amount_cents,
                discount_cents=discount,
            )
        )
    return credits


def apply_suspension_policy(
    credits: Iterable[Credit],
    status_of: Dict[int, str],
    accrue_for_suspended: bool,
) -> Tuple[List[Credit], List[Credit]]:
    """split credits into (kept, dropped) according to the suspension policy."""
    kept: List[Credit] = []
    dropped: List[Credit] = []
    for credit in credits:
        if not accrue_for_suspended and status_of.get(credit.affiliate_id) == SUSPENDED:
            dropped.append(credit)
        else:
            kept.append(credit)
    return kept, dropped
