from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from db.db import Database
from events import EVENT_TYPES, TIERS
from ledger_engine import REVERSED, balances
from reporting import TRAILING_MONTHS, YearMonth, rank_top_performers, trailing_months, zero_fill_months


def affiliate_stats_db(
    db: Database,
    affiliate_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    dashboard numbers for one affiliate.

    response:
    {
      "affiliate_id": 7,
      "lifetime_cents": 5460,
      "by_tier": {"DIRECT": 0, "SUB": 1560, "PARENT": 3900},
      "by_event_type": {"INVOICE_PAID": ..., "ORDER_PAID": ..., "REFUND": ..., "CHARGEBACK": ...},
      "monthly": [{"month": "2025-11", "amount_cents": 0}, ...],
      "balances": {"pending": ..., "available": ..., "paid": ..., "net": ..., "carried_debt": ...}
    }

    REVERSED rows (a fully reversed original and its offset) are left out
    of every total.
    """
    now = now or datetime.now(timezone.utc)
    window_start = trailing_months(now, TRAILING_MONTHS)[0]
    since = datetime(window_start.year, window_start.month, 1, tzinfo=timezone.utc)

    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT tier, event_type, SUM(amount_cents)
                FROM commission_ledger
                WHERE affiliate_id = %s AND status <> %s
                GROUP BY tier, event_type
                """,
                (affiliate_id, REVERSED),
            )
            by_kind = cur.fetchall()

            cur.execute(
                """
                SELECT EXTRACT(YEAR FROM created_at AT TIME ZONE 'UTC')::int,
                       EXTRACT(MONTH FROM created_at AT TIME ZONE 'UTC')::int,
                       SUM(amount_cents)
                FROM commission_ledger
                WHERE affiliate_id = %s AND status <> %s AND created_at >= %s
                GROUP BY 1, 2
                """,
                (affiliate_id, REVERSED, since),
            )
            monthly_rows = cur.fetchall()

            cur.execute(
                """
                SELECT status, carried_debt, SUM(amount_cents)
                FROM commission_ledger
                WHERE affiliate_id = %s
                GROUP BY status, carried_debt
                """,
                (affiliate_id,),
            )
            balance_rows = cur.fetchall()

    by_tier: Dict[str, int] = {tier: 0 for tier in TIERS}
    by_event_type: Dict[str, int] = {event_type: 0 for event_type in EVENT_TYPES}
    for tier, event_type, total in by_kind:
        by_tier[tier] += int(total)
        by_event_type[event_type] += int(total)

    monthly = zero_fill_months(
        ((YearMonth(year, month), total) for year, month, total in monthly_rows),
        now,
        TRAILING_MONTHS,
    )

    return {
        "affiliate_id": affiliate_id,
        "lifetime_cents": sum(by_tier.values()),
        "by_tier": by_tier,
        "by_event_type": by_event_type,
        "monthly": monthly,
        "balances": balances(balance_rows),
    }


def top_performers_db(db: Database, limit: int = 10) -> List[Dict[str, int]]:
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT affiliate_id, SUM(amount_cents)
                FROM commission_ledger
                WHERE status <> %s
                GROUP BY affiliate_id
                """,
                (REVERSED,),
            )
            rows = cur.fetchall()

    return rank_top_performers({aid: int(total) for aid, total in rows}, limit)
