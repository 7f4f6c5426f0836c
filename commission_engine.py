"""
commission split calculators.

all amounts are integer cents; percentages are Decimal fractions
(0.25 == 25%) except discount shares, which are whole percents 0-100
because that is how promo codes store them.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple

from config import CommissionRates
from events import INVOICE_PAID, ORDER_PAID


def percent_of(amount_cents: int, pct: Decimal) -> int:
    """amount * pct, half-up to the cent."""
    if amount_cents <= 0 or pct <= 0:
        return 0
    return int((Decimal(amount_cents) * Decimal(pct)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def max_discount_pct(is_sub: bool, rates: CommissionRates) -> int:
    return rates.sub_max_discount_pct if is_sub else rates.main_max_discount_pct


def apply_discount(
    commission_cents: int,
    discount_share_pct: int,
    min_commission_pct: Decimal,
) -> Tuple[int, int]:
    """
    rebate `discount_share_pct` percent of the affiliate's own commission
    to the buyer. returns (discount_cents, final_commission_cents).

    the affiliate always keeps at least min_commission_pct of the commission.
    """
    capped = min(max(int(discount_share_pct), 0), 100)
    discount = percent_of(commission_cents, Decimal(capped) / Decimal(100))
    final = commission_cents - discount

    min_commission = percent_of(commission_cents, min_commission_pct)
    if final < min_commission:
        return commission_cents - min_commission, min_commission
    return discount, final


def business_subscription_commission(
    base_cents: int,
    discount_share_pct: int,
    is_sub: bool,
    rates: CommissionRates,
) -> Dict[str, int]:
    """
    subscription purchase: the (sub-)affiliate earns a share of the base
    price and may hand part of it to the buyer as a discount. the platform
    share is always computed on the undiscounted base.
    """
    pct = rates.sub_business_pct if is_sub else rates.direct_business_pct
    commission = percent_of(base_cents, pct)
    platform_share = percent_of(base_cents, rates.direct_business_pct)

    requested = min(int(discount_share_pct or 0), max_discount_pct(is_sub, rates))
    min_pct = rates.sub_min_commission_pct if is_sub else rates.main_min_commission_pct
    discount, final_commission = apply_discount(commission, requested, min_pct)

    return {
        "affiliate_commission_cents": commission,
        "discount_cents": discount,
        "final_price_cents": max(base_cents, 0) - discount,
        "platform_share_cents": platform_share,
        "final_affiliate_commission_cents": final_commission,
    }


def user_transaction_commission(
    platform_fee_cents: int,
    sides: int,
    is_sub: bool,
    rates: CommissionRates,
) -> int:
    """share of the platform fee on a marketplace order, per attributed side (buyer/seller)."""
    per_side = rates.sub_user_pct if is_sub else rates.direct_user_pct
    return percent_of(platform_fee_cents, per_side * _clamp_sides(sides))


def parent_commission(
    amount_cents: int,
    event_type: str,
    sides: int,
    rates: CommissionRates,
) -> int:
    if event_type == INVOICE_PAID:
        return percent_of(amount_cents, rates.parent_business_pct)
    if event_type == ORDER_PAID:
        return percent_of(amount_cents, rates.parent_user_pct * _clamp_sides(sides))
    raise ValueError(f"no parent commission for event type {event_type}")


def subscription_price_preview(
    base_cents: int,
    discount_share_pct: int,
    is_sub: bool,
    rates: CommissionRates,
) -> Dict[str, int]:
    """what checkout shows when a promo code is applied."""
    result = business_subscription_commission(base_cents, discount_share_pct, is_sub, rates)
    return {"base_price_cents": max(base_cents, 0), **result}


def _clamp_sides(sides: int) -> int:
    return 2 if sides >= 2 else 1
