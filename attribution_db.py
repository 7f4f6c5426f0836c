from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from psycopg import Connection

from config import Settings
from db.db import Database
from db.repositories import (
    affiliate_has_subs,
    get_affiliate,
    get_affiliate_by_referral_code,
    get_affiliate_custom_rates,
    get_affiliate_parent_id,
    get_attribution,
    insert_affiliate,
    insert_attribution,
    set_affiliate_custom_rates,
    set_affiliate_parent,
    set_affiliate_status,
    set_payout_account,
)
from errors import NotFound, UnknownAttribution
from referral_engine import (
    ACTIVE,
    SOURCE_LINK,
    SUSPENDED,
    Attribution,
    CustomRates,
    TierShare,
    build_attribution,
    check_custom_rates,
    check_parent_assignment,
    resolve_tiers,
)


def create_affiliate_db(
    db: Database,
    user_id: str,
    parent_affiliate_id: Optional[int] = None,
    payout_account_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    sign a user up as an affiliate, optionally directly under a main affiliate.
    """
    with db.connection() as conn:
        try:
            affiliate = insert_affiliate(conn, user_id, payout_account_id)
            if parent_affiliate_id is not None:
                _link_parent(conn, affiliate["id"], parent_affiliate_id)
                affiliate["parent_affiliate_id"] = parent_affiliate_id
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("affiliate {} created for user {}", affiliate["id"], user_id)
    return affiliate


def assign_parent_db(db: Database, child_id: int, parent_id: int) -> Dict[str, Any]:
    """
    admin action: put `child_id` under `parent_id`.

    rules:
      - both affiliates must exist
      - no self-parenting, no cycles
      - the tree stays at most two levels deep
    existing attributions keep the parent they snapshotted.
    """
    with db.connection() as conn:
        try:
            _link_parent(conn, child_id, parent_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("affiliate {} now reports to {}", child_id, parent_id)
    return {"status": "linked", "child_id": child_id, "parent_id": parent_id}


def _link_parent(conn: Connection, child_id: int, parent_id: int) -> None:
    if get_affiliate(conn, parent_id, for_update=True) is None:
        raise NotFound(f"Affiliate {parent_id} not found")
    child = get_affiliate(conn, child_id, for_update=True)
    if child is None:
        raise NotFound(f"Affiliate {child_id} not found")

    check_parent_assignment(
        child_id,
        parent_id,
        parent_of=lambda affiliate_id: get_affiliate_parent_id(conn, affiliate_id),
        child_has_subs=affiliate_has_subs(conn, child_id),
    )
    set_affiliate_parent(conn, child_id, parent_id)


def set_affiliate_status_db(db: Database, affiliate_id: int, status: str) -> Dict[str, Any]:
    if status not in (ACTIVE, SUSPENDED):
        raise ValueError(f"Invalid affiliate status {status!r}")
    with db.connection() as conn:
        try:
            set_affiliate_status(conn, affiliate_id, status)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("affiliate {} status set to {}", affiliate_id, status)
    return {"affiliate_id": affiliate_id, "status": status}


def set_payout_account_db(
    db: Database,
    affiliate_id: int,
    payout_account_id: Optional[str],
    onboarding_completed: bool,
) -> Dict[str, Any]:
    with db.connection() as conn:
        try:
            set_payout_account(conn, affiliate_id, payout_account_id, onboarding_completed)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return {
        "affiliate_id": affiliate_id,
        "payout_account_id": payout_account_id,
        "onboarding_completed": onboarding_completed,
    }


def set_custom_rates_db(
    db: Database,
    settings: Settings,
    affiliate_id: int,
    custom: CustomRates,
) -> Dict[str, Any]:
    """
    negotiated shares for one affiliate (typically a sub-affiliate, agreed
    with its main affiliate). None fields fall back to the global rates.
    only attributions made from now on pick them up.
    """
    with db.connection() as conn:
        try:
            affiliate = get_affiliate(conn, affiliate_id, for_update=True)
            if affiliate is None:
                raise NotFound(f"Affiliate {affiliate_id} not found")
            is_sub = affiliate["parent_affiliate_id"] is not None
            check_custom_rates(custom, settings.rates, is_sub)
            set_affiliate_custom_rates(conn, affiliate_id, custom)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("custom commission rates for affiliate {} set to {}", affiliate_id, custom)
    return {
        "affiliate_id": affiliate_id,
        "custom_business_pct": custom.business_pct,
        "custom_parent_business_pct": custom.parent_business_pct,
        "custom_user_pct": custom.user_pct,
        "custom_parent_user_pct": custom.parent_user_pct,
    }


def attribute_account_in_tx(
    conn: Connection,
    settings: Settings,
    account_id: str,
    affiliate_id: int,
    now: datetime,
    **attribution_fields,
) -> Dict[str, Any]:
    """
    record who referred `account_id`. only the first-ever attribution is
    kept; later links/codes do not re-attribute the account.
    """
    attribution = build_attribution(
        account_id,
        affiliate_id,
        parent_of=lambda aid: get_affiliate_parent_id(conn, aid),
        now=now,
        window_days=settings.attribution_window_days,
        custom_rates=get_affiliate_custom_rates(conn, affiliate_id),
        **attribution_fields,
    )
    created = insert_attribution(conn, attribution)
    if not created:
        existing = get_attribution(conn, account_id)
        logger.info(
            "account {} already attributed to affiliate {}, keeping it",
            account_id,
            existing.affiliate_id if existing else None,
        )
        return {"status": "already_attributed", "account_id": account_id, "affiliate_id": existing.affiliate_id}

    return {
        "status": "attributed",
        "account_id": account_id,
        "affiliate_id": attribution.affiliate_id,
        "parent_affiliate_id": attribution.parent_affiliate_id,
        "has_l2": attribution.has_l2,
        "source": attribution.source,
    }


def attribute_account_db(
    db: Database,
    settings: Settings,
    account_id: str,
    referral_code: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """signup through a referral link."""
    now = now or datetime.now(timezone.utc)
    with db.connection() as conn:
        try:
            affiliate_id = get_affiliate_by_referral_code(conn, referral_code)
            result = attribute_account_in_tx(
                conn, settings, account_id, affiliate_id, now, source=SOURCE_LINK
            )
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise


def load_attribution(conn: Connection, account_id: str, at: datetime) -> Attribution:
    """
    stored attribution for an account, never recomputed from the current tree.
    raises UnknownAttribution when missing or outside its revenue-share window.
    """
    attribution = get_attribution(conn, account_id)
    if attribution is None:
        raise UnknownAttribution(account_id)
    if not attribution.is_active(at):
        raise UnknownAttribution(account_id, "attribution window expired")
    return attribution


def resolve(
    conn: Connection,
    settings: Settings,
    account_id: str,
    event_type: str,
    at: datetime,
) -> List[TierShare]:
    attribution = load_attribution(conn, account_id, at)
    return resolve_tiers(attribution, event_type, settings.rates)
