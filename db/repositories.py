from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import secrets
import string

from psycopg import Connection
from psycopg.types.json import Jsonb

from errors import NotFound
from ledger_engine import AVAILABLE, PAID, PENDING, LedgerEntry
from promo_engine import PromoCode
from referral_engine import Attribution, CustomRates


# ---------
# affiliates
# ---------

def _generate_unique_referral_code(conn: Connection) -> str:
    """
    generate a unique referral code (AFF_XXXXXXXX).
    uses DB uniqueness check to guarantee no collisions.
    """
    alphabet = string.ascii_uppercase + string.digits
    while True:
        candidate = "AFF_" + "".join(secrets.choice(alphabet) for _ in range(8))
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM affiliates WHERE referral_code = %s",
                (candidate,),
            )
            if cur.fetchone() is None:
                return candidate


_AFFILIATE_COLUMNS = """
    id, user_id, referral_code, status, parent_affiliate_id,
    payout_account_id, onboarding_completed, created_at
"""


def _affiliate_row(row) -> Dict[str, Any]:
    return {
        "id": row[0],
        "user_id": row[1],
        "referral_code": row[2],
        "status": row[3],
        "parent_affiliate_id": row[4],
        "payout_account_id": row[5],
        "onboarding_completed": row[6],
        "created_at": row[7],
    }


def insert_affiliate(
    conn: Connection,
    user_id: str,
    payout_account_id: Optional[str] = None,
) -> Dict[str, Any]:
    user_id = user_id.strip()
    if not user_id:
        raise ValueError("user_id cannot be empty")

    referral_code = _generate_unique_referral_code(conn)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO affiliates (user_id, referral_code, payout_account_id)
            VALUES (%s, %s, %s)
            ON CONFLICT (user_id) DO NOTHING
            RETURNING {_AFFILIATE_COLUMNS}
            """,
            (user_id, referral_code, payout_account_id),
        )
        row = cur.fetchone()
    if row is None:
        raise ValueError(f"user {user_id} is already an affiliate")
    return _affiliate_row(row)


def get_affiliate(conn: Connection, affiliate_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {_AFFILIATE_COLUMNS} FROM affiliates WHERE id = %s{lock}",
            (affiliate_id,),
        )
        row = cur.fetchone()
    return _affiliate_row(row) if row else None


def get_affiliate_parent_id(conn: Connection, affiliate_id: int) -> Optional[int]:
    """
    fetch parent_affiliate_id, or None for a top-level affiliate.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT parent_affiliate_id FROM affiliates WHERE id = %s",
            (affiliate_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"Affiliate {affiliate_id} not found")
        return row[0]


def affiliate_has_subs(conn: Connection, affiliate_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM affiliates WHERE parent_affiliate_id = %s LIMIT 1",
            (affiliate_id,),
        )
        return cur.fetchone() is not None


def set_affiliate_parent(conn: Connection, child_id: int, parent_id: int) -> None:
    """
    set parent_affiliate_id. assumes all tree checks already done.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE affiliates
            SET parent_affiliate_id = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (parent_id, child_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to set parent for affiliate {child_id}")


def set_affiliate_status(conn: Connection, affiliate_id: int, status: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE affiliates SET status = %s, updated_at = NOW() WHERE id = %s",
            (status, affiliate_id),
        )
        if cur.rowcount != 1:
            raise NotFound(f"Affiliate {affiliate_id} not found")


def set_payout_account(
    conn: Connection,
    affiliate_id: int,
    payout_account_id: Optional[str],
    onboarding_completed: bool,
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE affiliates
            SET payout_account_id = %s, onboarding_completed = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (payout_account_id, onboarding_completed, affiliate_id),
        )
        if cur.rowcount != 1:
            raise NotFound(f"Affiliate {affiliate_id} not found")


def get_affiliate_by_referral_code(conn: Connection, referral_code: str) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM affiliates WHERE referral_code = %s",
            (referral_code.strip().upper(),),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"No affiliate found with referral_code={referral_code}")
        return row[0]


def get_affiliate_custom_rates(conn: Connection, affiliate_id: int) -> CustomRates:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT custom_business_pct, custom_parent_business_pct,
                   custom_user_pct, custom_parent_user_pct
            FROM affiliates
            WHERE id = %s
            """,
            (affiliate_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Affiliate {affiliate_id} not found")
    return CustomRates(*row)


def set_affiliate_custom_rates(conn: Connection, affiliate_id: int, custom: CustomRates) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE affiliates
            SET custom_business_pct = %s,
                custom_parent_business_pct = %s,
                custom_user_pct = %s,
                custom_parent_user_pct = %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (
                custom.business_pct,
                custom.parent_business_pct,
                custom.user_pct,
                custom.parent_user_pct,
                affiliate_id,
            ),
        )
        if cur.rowcount != 1:
            raise NotFound(f"Affiliate {affiliate_id} not found")


def get_affiliate_statuses(conn: Connection, affiliate_ids: Iterable[int]) -> Dict[int, str]:
    ids = list(affiliate_ids)
    if not ids:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, status FROM affiliates WHERE id = ANY(%s)",
            (ids,),
        )
        return {r[0]: r[1] for r in cur.fetchall()}


def lock_affiliates(conn: Connection, affiliate_ids: Iterable[int]) -> None:
    """
    row-lock affiliates in id order so payouts and reversals serialize
    without deadlocking each other.
    """
    ids = sorted(set(affiliate_ids))
    if not ids:
        return
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM affiliates WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
            (ids,),
        )
        cur.fetchall()


# ---------
# promo codes
# ---------

_PROMO_SELECT = """
    SELECT p.id, p.code, p.affiliate_id, p.discount_share_pct, p.has_l2, p.status,
           p.starts_at, p.ends_at, p.max_redemptions, p.redemption_count, a.status
    FROM promo_codes p
    JOIN affiliates a ON a.id = p.affiliate_id
"""


def _promo_row(row) -> PromoCode:
    return PromoCode(
        id=row[0],
        code=row[1],
        affiliate_id=row[2],
        discount_share_pct=row[3],
        has_l2=row[4],
        status=row[5],
        starts_at=row[6],
        ends_at=row[7],
        max_redemptions=row[8],
        redemption_count=row[9],
        affiliate_status=row[10],
    )


def insert_promo_code(
    conn: Connection,
    code: str,
    affiliate_id: int,
    discount_share_pct: int,
    has_l2: bool,
    starts_at: datetime,
    ends_at: Optional[datetime],
    max_redemptions: Optional[int],
) -> PromoCode:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO promo_codes
                (code, affiliate_id, discount_share_pct, has_l2, starts_at, ends_at, max_redemptions)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (code) DO NOTHING
            RETURNING id
            """,
            (code, affiliate_id, discount_share_pct, has_l2, starts_at, ends_at, max_redemptions),
        )
        row = cur.fetchone()
    if row is None:
        raise ValueError(f"promo code {code!r} already exists")
    return get_promo_code(conn, code)


def get_promo_code(conn: Connection, code: str, for_update: bool = False) -> Optional[PromoCode]:
    lock = " FOR UPDATE OF p" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(f"{_PROMO_SELECT} WHERE p.code = %s{lock}", (code,))
        row = cur.fetchone()
    return _promo_row(row) if row else None


def get_promo_code_by_id(conn: Connection, promo_code_id: int) -> Optional[PromoCode]:
    with conn.cursor() as cur:
        cur.execute(f"{_PROMO_SELECT} WHERE p.id = %s", (promo_code_id,))
        row = cur.fetchone()
    return _promo_row(row) if row else None


def increment_promo_redemption(conn: Connection, promo_code_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE promo_codes SET redemption_count = redemption_count + 1 WHERE id = %s",
            (promo_code_id,),
        )


def retire_promo_code(conn: Connection, promo_code_id: int) -> str:
    """
    used codes are only disabled (ledger history points at them),
    unused codes are deleted outright.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT redemption_count FROM promo_codes WHERE id = %s FOR UPDATE
            """,
            (promo_code_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"Promo code {promo_code_id} not found")

        used = row[0] > 0 or _promo_is_referenced(conn, promo_code_id)
        if used:
            cur.execute(
                "UPDATE promo_codes SET status = 'DISABLED' WHERE id = %s",
                (promo_code_id,),
            )
            return "disabled"
        cur.execute("DELETE FROM promo_codes WHERE id = %s", (promo_code_id,))
        return "deleted"


def _promo_is_referenced(conn: Connection, promo_code_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM attributions WHERE promo_code_id = %s LIMIT 1",
            (promo_code_id,),
        )
        return cur.fetchone() is not None


# ---------
# attributions
# ---------

def insert_attribution(conn: Connection, attribution: Attribution) -> bool:
    """
    first attribution wins: returns False when the account already had one.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO attributions
                (account_id, affiliate_id, parent_affiliate_id, has_l2, source,
                 promo_code_id, discount_share_pct, starts_at, ends_at,
                 custom_business_pct, custom_parent_business_pct,
                 custom_user_pct, custom_parent_user_pct)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (account_id) DO NOTHING
            RETURNING account_id
            """,
            (
                attribution.account_id,
                attribution.affiliate_id,
                attribution.parent_affiliate_id,
                attribution.has_l2,
                attribution.source,
                attribution.promo_code_id,
                attribution.discount_share_pct,
                attribution.starts_at,
                attribution.ends_at,
                attribution.custom_rates.business_pct,
                attribution.custom_rates.parent_business_pct,
                attribution.custom_rates.user_pct,
                attribution.custom_rates.parent_user_pct,
            ),
        )
        return cur.fetchone() is not None


def get_attribution(conn: Connection, account_id: str) -> Optional[Attribution]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT account_id, affiliate_id, parent_affiliate_id, has_l2, source,
                   starts_at, ends_at, promo_code_id, discount_share_pct,
                   custom_business_pct, custom_parent_business_pct,
                   custom_user_pct, custom_parent_user_pct
            FROM attributions
            WHERE account_id = %s
            """,
            (account_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return Attribution(
        account_id=row[0],
        affiliate_id=row[1],
        parent_affiliate_id=row[2],
        has_l2=row[3],
        source=row[4],
        starts_at=row[5],
        ends_at=row[6],
        promo_code_id=row[7],
        discount_share_pct=row[8],
        custom_rates=CustomRates(*row[9:13]),
    )


# ---------
# processed events
# ---------

def claim_event(
    conn: Connection,
    event_id: str,
    event_type: str,
    account_id: str,
    amount_cents: int,
    original_event_id: Optional[str] = None,
) -> bool:
    """
    insert the event into processed_events if not already present (idempotent).
    returns True when this call claimed it.

    the primary key on (event_id, event_type) makes concurrent deliveries
    of the same webhook serialize here.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO processed_events
                (event_id, event_type, account_id, amount_cents, original_event_id)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (event_id, event_type) DO NOTHING
            RETURNING event_id
            """,
            (event_id, event_type, account_id, amount_cents, original_event_id),
        )
        return cur.fetchone() is not None


def set_event_outcome(conn: Connection, event_id: str, event_type: str, outcome: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE processed_events SET outcome = %s WHERE event_id = %s AND event_type = %s",
            (outcome, event_id, event_type),
        )


def lock_source_event(conn: Connection, source_event_id: str) -> None:
    """
    transaction-scoped advisory lock on a revenue event id. the revenue
    event and every refund/chargeback of it take the same lock, so they
    apply one after the other whatever order they arrive in.
    """
    with conn.cursor() as cur:
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (source_event_id,))


def get_orphan_reversals(conn: Connection, source_event_id: str) -> List[Dict[str, Any]]:
    """
    refunds/chargebacks that arrived before the revenue event they reverse.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT event_id, event_type, amount_cents
            FROM processed_events
            WHERE original_event_id = %s AND outcome = 'nothing_to_reverse'
            ORDER BY received_at, event_id
            FOR UPDATE
            """,
            (source_event_id,),
        )
        rows = cur.fetchall()
    return [{"event_id": r[0], "event_type": r[1], "amount_cents": r[2]} for r in rows]


def get_event_amount(conn: Connection, event_id: str, event_types: Iterable[str]) -> Optional[int]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT amount_cents FROM processed_events
            WHERE event_id = %s AND event_type = ANY(%s)
            """,
            (event_id, list(event_types)),
        )
        row = cur.fetchone()
    return row[0] if row else None


# ---------
# commission ledger
# ---------

_ENTRY_COLUMNS = """
    id, affiliate_id, source_event_id, event_type, tier, amount_cents, status,
    base_amount_cents, available_at, reversal_of_id, payout_id, carried_debt
"""


def _entry_row(row) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        affiliate_id=row[1],
        source_event_id=row[2],
        event_type=row[3],
        tier=row[4],
        amount_cents=row[5],
        status=row[6],
        base_amount_cents=row[7],
        available_at=row[8],
        reversal_of_id=row[9],
        payout_id=row[10],
        carried_debt=row[11],
    )


def insert_ledger_entry(
    conn: Connection,
    affiliate_id: int,
    source_event_id: str,
    event_type: str,
    tier: str,
    amount_cents: int,
    status: str,
    available_at: Optional[datetime],
    share_pct=None,
    base_amount_cents: Optional[int] = None,
    discount_cents: int = 0,
    carried_debt: bool = False,
    reversal_of_id: Optional[int] = None,
    original_source_event_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> Optional[int]:
    """
    append one ledger row. returns its id, or None when it already exists:
      - credits are unique per (source_event_id, affiliate_id, tier, event_type)
      - offsets are unique per (reversing event, event_type, reversed row)
    """
    if reversal_of_id is None:
        conflict = "(source_event_id, affiliate_id, tier, event_type) WHERE reversal_of_id IS NULL"
    else:
        conflict = "(source_event_id, event_type, reversal_of_id) WHERE reversal_of_id IS NOT NULL"
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO commission_ledger
                (affiliate_id, source_event_id, event_type, tier, amount_cents, status,
                 available_at, share_pct, base_amount_cents, discount_cents,
                 carried_debt, reversal_of_id, original_source_event_id, reason)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT {conflict} DO NOTHING
            RETURNING id
            """,
            (
                affiliate_id,
                source_event_id,
                event_type,
                tier,
                amount_cents,
                status,
                available_at,
                share_pct,
                base_amount_cents,
                discount_cents,
                carried_debt,
                reversal_of_id,
                original_source_event_id,
                reason,
            ),
        )
        row = cur.fetchone()
        return row[0] if row else None


def get_entries_for_source(
    conn: Connection,
    source_event_id: str,
    for_update: bool = False,
) -> List[LedgerEntry]:
    """credits of one revenue event plus every offset written against them."""
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM commission_ledger
            WHERE (source_event_id = %s AND reversal_of_id IS NULL)
               OR original_source_event_id = %s
            ORDER BY id{lock}
            """,
            (source_event_id, source_event_id),
        )
        return [_entry_row(r) for r in cur.fetchall()]


def get_affiliate_entries(conn: Connection, affiliate_id: int, limit: int = 10_000) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, source_event_id, event_type, tier, amount_cents, status,
                   carried_debt, payout_id, available_at, created_at
            FROM commission_ledger
            WHERE affiliate_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (affiliate_id, limit),
        )
        rows = cur.fetchall()
    return [
        {
            "id": r[0],
            "source_event_id": r[1],
            "event_type": r[2],
            "tier": r[3],
            "amount_cents": r[4],
            "status": r[5],
            "carried_debt": r[6],
            "payout_id": r[7],
            "available_at": r[8],
            "created_at": r[9],
        }
        for r in rows
    ]


def mark_entry_reversed(conn: Connection, entry_id: int) -> None:
    """PENDING/AVAILABLE -> REVERSED. never touches a paid or held row."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_ledger
            SET status = 'REVERSED', updated_at = NOW()
            WHERE id = %s AND status IN ('PENDING', 'AVAILABLE') AND payout_id IS NULL
            """,
            (entry_id,),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Ledger entry {entry_id} can no longer be reversed")


def release_matured_entries(conn: Connection, now: datetime) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_ledger
            SET status = %s, updated_at = NOW()
            WHERE status = %s AND available_at <= %s
            RETURNING id, affiliate_id, amount_cents
            """,
            (AVAILABLE, PENDING, now),
        )
        rows = cur.fetchall()
    return [{"id": r[0], "affiliate_id": r[1], "amount_cents": r[2]} for r in rows]


def get_available_entries_for_update(conn: Connection, affiliate_id: int) -> List[LedgerEntry]:
    """
    lock every AVAILABLE row of one affiliate. caller must hold the
    affiliate row lock so nothing new slips in between sum and claim.
    """
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM commission_ledger
            WHERE affiliate_id = %s AND status = %s
            ORDER BY id
            FOR UPDATE
            """,
            (affiliate_id, AVAILABLE),
        )
        return [_entry_row(r) for r in cur.fetchall()]


def affiliates_with_available_entries(conn: Connection) -> List[int]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT DISTINCT affiliate_id
            FROM commission_ledger
            WHERE status = %s AND payout_id IS NULL
            ORDER BY affiliate_id
            """,
            (AVAILABLE,),
        )
        return [r[0] for r in cur.fetchall()]


def hold_entries(conn: Connection, entry_ids: List[int], payout_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_ledger
            SET payout_id = %s, updated_at = NOW()
            WHERE id = ANY(%s) AND status = %s AND payout_id IS NULL
            """,
            (payout_id, entry_ids, AVAILABLE),
        )
        if cur.rowcount != len(entry_ids):
            raise ValueError(f"Could not claim all entries for payout {payout_id}")


def mark_held_entries_paid(conn: Connection, payout_id: int) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_ledger
            SET status = %s, updated_at = NOW()
            WHERE payout_id = %s AND status = %s
            """,
            (PAID, payout_id, AVAILABLE),
        )
        return cur.rowcount


def release_held_entries(conn: Connection, payout_id: int) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE commission_ledger
            SET payout_id = NULL, updated_at = NOW()
            WHERE payout_id = %s AND status = %s
            """,
            (payout_id, AVAILABLE),
        )
        return cur.rowcount


# ---------
# payouts
# ---------

_PAYOUT_COLUMNS = """
    id, affiliate_id, amount_cents, currency, status, entry_ids, idempotency_key,
    transfer_id, failure_reason, needs_reconciliation, created_at, updated_at
"""


def _payout_row(row) -> Dict[str, Any]:
    return {
        "id": row[0],
        "affiliate_id": row[1],
        "amount_cents": row[2],
        "currency": row[3],
        "status": row[4],
        "entry_ids": list(row[5]),
        "idempotency_key": row[6],
        "transfer_id": row[7],
        "failure_reason": row[8],
        "needs_reconciliation": row[9],
        "created_at": row[10],
        "updated_at": row[11],
    }


def insert_payout(
    conn: Connection,
    affiliate_id: int,
    amount_cents: int,
    currency: str,
    entry_ids: List[int],
    idempotency_key: str,
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO affiliate_payouts
                (affiliate_id, amount_cents, currency, status, entry_ids, idempotency_key)
            VALUES (%s, %s, %s, 'CREATED', %s, %s)
            RETURNING {_PAYOUT_COLUMNS}
            """,
            (affiliate_id, amount_cents, currency, entry_ids, idempotency_key),
        )
        return _payout_row(cur.fetchone())


def get_payout(conn: Connection, payout_id: int, for_update: bool = False) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {_PAYOUT_COLUMNS} FROM affiliate_payouts WHERE id = %s{lock}",
            (payout_id,),
        )
        row = cur.fetchone()
    return _payout_row(row) if row else None


def update_payout_status(
    conn: Connection,
    payout_id: int,
    expected_status: str,
    status: str,
    transfer_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
    needs_reconciliation: bool = False,
) -> bool:
    """
    compare-and-set on status. False means someone else (reconciliation)
    already moved the payout.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE affiliate_payouts
            SET status = %s,
                transfer_id = COALESCE(%s, transfer_id),
                failure_reason = %s,
                needs_reconciliation = %s,
                updated_at = NOW()
            WHERE id = %s AND status = %s
            """,
            (status, transfer_id, failure_reason, needs_reconciliation, payout_id, expected_status),
        )
        return cur.rowcount == 1


def get_payouts_to_reconcile(conn: Connection, stale_before: datetime, limit: int = 100) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_PAYOUT_COLUMNS}
            FROM affiliate_payouts
            WHERE (status = 'CREATED' AND created_at < %s)
               OR (status = 'FAILED' AND needs_reconciliation)
            ORDER BY id
            LIMIT %s
            """,
            (stale_before, limit),
        )
        return [_payout_row(r) for r in cur.fetchall()]


# ---------
# notification outbox
# ---------

def enqueue_notification(
    conn: Connection,
    affiliate_id: Optional[int],
    kind: str,
    payload: Dict[str, Any],
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO notification_outbox (affiliate_id, kind, payload)
            VALUES (%s, %s, %s)
            """,
            (affiliate_id, kind, Jsonb(payload)),
        )


def claim_pending_notifications(conn: Connection, limit: int) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, affiliate_id, kind, payload, attempts
            FROM notification_outbox
            WHERE status = 'PENDING'
            ORDER BY id
            LIMIT %s
            FOR UPDATE SKIP LOCKED
            """,
            (limit,),
        )
        rows = cur.fetchall()
    return [
        {"id": r[0], "affiliate_id": r[1], "kind": r[2], "payload": r[3], "attempts": r[4]}
        for r in rows
    ]


def mark_notification_sent(conn: Connection, notification_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE notification_outbox
            SET status = 'SENT', attempts = attempts + 1, delivered_at = NOW()
            WHERE id = %s
            """,
            (notification_id,),
        )


def mark_notification_failed(conn: Connection, notification_id: int, error: str, give_up: bool) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE notification_outbox
            SET attempts = attempts + 1,
                last_error = %s,
                status = CASE WHEN %s THEN 'FAILED' ELSE status END
            WHERE id = %s
            """,
            (error[:1000], give_up, notification_id),
        )
