from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from attribution_db import attribute_account_in_tx
from commission_engine import subscription_price_preview
from config import Settings
from db.db import Database
from db.repositories import (
    get_affiliate,
    get_promo_code,
    increment_promo_redemption,
    insert_promo_code,
    retire_promo_code,
)
from errors import NotFound
from promo_engine import PromoValidation, check_discount_share, normalize_code, validate_promo
from referral_engine import SOURCE_PROMO_CODE


def create_promo_code_db(
    db: Database,
    settings: Settings,
    affiliate_id: int,
    code: str,
    discount_share_pct: int = 0,
    starts_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
    max_redemptions: Optional[int] = None,
) -> Dict[str, Any]:
    code = normalize_code(code)
    if not code:
        raise ValueError("code cannot be empty")
    if max_redemptions is not None and max_redemptions < 1:
        raise ValueError("max_redemptions must be positive")

    with db.connection() as conn:
        try:
            affiliate = get_affiliate(conn, affiliate_id)
            if affiliate is None:
                raise NotFound(f"Affiliate {affiliate_id} not found")

            is_sub = affiliate["parent_affiliate_id"] is not None
            share = check_discount_share(discount_share_pct, is_sub, settings.rates)
            promo = insert_promo_code(
                conn,
                code=code,
                affiliate_id=affiliate_id,
                discount_share_pct=share,
                has_l2=is_sub,
                starts_at=starts_at or datetime.now(timezone.utc),
                ends_at=ends_at,
                max_redemptions=max_redemptions,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("promo code {} created for affiliate {}", promo.code, affiliate_id)
    return {
        "id": promo.id,
        "code": promo.code,
        "affiliate_id": promo.affiliate_id,
        "discount_share_pct": promo.discount_share_pct,
        "has_l2": promo.has_l2,
        "status": promo.status,
    }


def validate_promo_db(db: Database, code: str, now: Optional[datetime] = None) -> PromoValidation:
    """
    read-only check used by the checkout form.
    raises InvalidPromoCode (CodeNotFound / CodeInactive / ...) on failure.
    """
    now = now or datetime.now(timezone.utc)
    with db.connection() as conn:
        record = get_promo_code(conn, normalize_code(code))
    return validate_promo(code, record, now)


def redeem_promo_code_db(
    db: Database,
    settings: Settings,
    account_id: str,
    code: str,
    base_price_cents: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    checkout-time application of a promo code: count the redemption,
    attribute the account (first attribution wins) and return the price
    preview plus the metadata the revenue event has to carry.
    """
    now = now or datetime.now(timezone.utc)
    with db.connection() as conn:
        try:
            record = get_promo_code(conn, normalize_code(code), for_update=True)
            validation = validate_promo(code, record, now)

            increment_promo_redemption(conn, validation.promo_code_id)
            attribution = attribute_account_in_tx(
                conn,
                settings,
                account_id,
                validation.affiliate_id,
                now,
                source=SOURCE_PROMO_CODE,
                promo_code_id=validation.promo_code_id,
                discount_share_pct=validation.discount_share_pct,
                has_l2=validation.has_l2,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    is_sub = validation.has_l2
    preview = subscription_price_preview(
        base_price_cents, validation.discount_share_pct, is_sub, settings.rates
    )
    metadata = {
        "tier": "SUB" if is_sub else "DIRECT",
        "promoCode": validation.code,
        "discountSharePct": validation.discount_share_pct,
    }
    return {
        "account_id": account_id,
        "attribution": attribution["status"],
        "price": preview,
        "event_metadata": metadata,
    }


def retire_promo_code_db(db: Database, promo_code_id: int) -> Dict[str, Any]:
    with db.connection() as conn:
        try:
            action = retire_promo_code(conn, promo_code_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return {"promo_code_id": promo_code_id, "action": action}
