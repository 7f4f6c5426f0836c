from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Dict, Optional

# card processor pricing: percentage + fixed fee per charge
PROCESSOR_FEE_PERCENT = Decimal("1.4")
PROCESSOR_FIXED_FEE_CENTS = 25

# platform fee (percent of the sale) by seller subscription tier
DEFAULT_PLATFORM_FEE_PERCENT = 12
PLATFORM_FEE_PERCENT_BY_TIER = {
    "BASIC": 7,
    "PRO": 4,
    "PREMIUM": 2,
}

_ONE_CENT = Decimal("1")


def compute_buyer_total(
    subtotal_cents: int,
    fee_percent: Decimal = PROCESSOR_FEE_PERCENT,
    fixed_fee_cents: int = PROCESSOR_FIXED_FEE_CENTS,
) -> Dict[str, int]:
    """
    gross up a subtotal so the seller still nets `subtotal_cents` after the
    processor takes its fee from the buyer total.

    buyer_total = ceil((subtotal + fixed) / (1 - pct))
    processor_fee = buyer_total - subtotal

    ceiling rounding means the platform never eats a fractional cent.
    """
    if subtotal_cents <= 0:
        return {"buyer_total_cents": 0, "processor_fee_cents": 0}

    rate = Decimal(fee_percent) / Decimal(100)
    gross = (Decimal(subtotal_cents + fixed_fee_cents) / (Decimal(1) - rate)).quantize(
        _ONE_CENT, rounding=ROUND_CEILING
    )
    buyer_total_cents = int(gross)

    return {
        "buyer_total_cents": buyer_total_cents,
        "processor_fee_cents": buyer_total_cents - subtotal_cents,
    }


def processor_fee_for_gross(
    gross_cents: int,
    fee_percent: Decimal = PROCESSOR_FEE_PERCENT,
    fixed_fee_cents: int = PROCESSOR_FIXED_FEE_CENTS,
) -> int:
    """what the processor actually withholds on a charge of `gross_cents`."""
    if gross_cents <= 0:
        return 0
    variable = (Decimal(gross_cents) * Decimal(fee_percent) / Decimal(100)).quantize(
        _ONE_CENT, rounding=ROUND_HALF_UP
    )
    return int(variable) + fixed_fee_cents


def compute_platform_fee_cents(amount_cents: int, platform_fee_percent) -> int:
    if amount_cents <= 0:
        return 0
    pct = Decimal(str(platform_fee_percent))
    fee = (Decimal(amount_cents) * pct / Decimal(100)).quantize(_ONE_CENT, rounding=ROUND_HALF_UP)
    return int(fee)


def platform_fee_percent_for(subscription_tier: Optional[str]) -> int:
    if not subscription_tier:
        return DEFAULT_PLATFORM_FEE_PERCENT
    return PLATFORM_FEE_PERCENT_BY_TIER.get(subscription_tier.upper(), DEFAULT_PLATFORM_FEE_PERCENT)


def compute_seller_payout(amount_cents: int, subscription_tier: Optional[str] = None) -> Dict[str, int]:
    pct = platform_fee_percent_for(subscription_tier)
    platform_fee = compute_platform_fee_cents(amount_cents, pct)
    return {
        "amount_cents": max(amount_cents, 0),
        "platform_fee_percent": pct,
        "platform_fee_cents": platform_fee,
        "seller_payout_cents": max(amount_cents, 0) - platform_fee,
    }
