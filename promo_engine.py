from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from commission_engine import max_discount_pct
from config import CommissionRates
from errors import CodeExhausted, CodeExpired, CodeInactive, CodeNotFound, InvalidPromoCode
from referral_engine import SUSPENDED

CODE_ACTIVE = "ACTIVE"
CODE_DISABLED = "DISABLED"


@dataclass(frozen=True)
class PromoCode:
    id: int
    code: str
    affiliate_id: int
    discount_share_pct: int
    has_l2: bool
    status: str
    starts_at: datetime
    ends_at: Optional[datetime]
    max_redemptions: Optional[int]
    redemption_count: int
    affiliate_status: str


@dataclass(frozen=True)
class PromoValidation:
    valid: bool
    code: str
    promo_code_id: int
    affiliate_id: int
    discount_share_pct: int
    has_l2: bool

    def as_response(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "discountSharePct": self.discount_share_pct,
            "hasL2": self.has_l2,
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def validate_promo(code: str, record: Optional[PromoCode], now: datetime) -> PromoValidation:
    """
    check a looked-up promo code against its owner and its validity window.
    raises an InvalidPromoCode subclass on failure; no side effects.
    """
    normalized = normalize_code(code)
    if record is None:
        raise CodeNotFound(normalized)

    if record.status != CODE_ACTIVE:
        raise CodeInactive(normalized, f"promo code {normalized!r} is disabled")
    if record.affiliate_status == SUSPENDED:
        raise CodeInactive(normalized, f"promo code {normalized!r} belongs to a suspended affiliate")
    if record.starts_at > now or (record.ends_at is not None and record.ends_at < now):
        raise CodeExpired(normalized, f"promo code {normalized!r} is not valid at this time")
    if record.max_redemptions is not None and record.redemption_count >= record.max_redemptions:
        raise CodeExhausted(normalized, f"promo code {normalized!r} has no redemptions left")

    return PromoValidation(
        valid=True,
        code=record.code,
        promo_code_id=record.id,
        affiliate_id=record.affiliate_id,
        discount_share_pct=record.discount_share_pct,
        has_l2=record.has_l2,
    )


def check_discount_share(discount_share_pct: int, is_sub: bool, rates: CommissionRates) -> int:
    """enforce the per-affiliate-type discount cap when a code is created or edited."""
    if discount_share_pct < 0 or discount_share_pct > 100:
        raise ValueError("discount_share_pct must be between 0 and 100")
    cap = max_discount_pct(is_sub, rates)
    if discount_share_pct > cap:
        raise ValueError(
            f"discount share of {discount_share_pct}% exceeds the maximum of {cap}% "
            f"for {'sub' if is_sub else 'main'} affiliates"
        )
    return int(discount_share_pct)


def invalid_response(exc: InvalidPromoCode) -> Dict[str, Any]:
    return {"valid": False, "error": exc.reason, "message": str(exc)}
