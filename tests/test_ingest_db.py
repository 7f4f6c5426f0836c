from decimal import Decimal

import pytest

import ingest_db
from config import CommissionRates
from conftest import fetch_one, ledger_rows
from events import InboundEvent
from ingest_db import handle_event_db
from ledger_engine import AVAILABLE, PENDING, REVERSED, balances
from outbox_db import deliver_pending_notifications
from referral_engine import SUSPENDED
from attribution_db import set_affiliate_status_db


def _event(event_id, type_, account_id, amount, **extra):
    return InboundEvent(event_id=event_id, type=type_, account_id=account_id, amount_cents=amount, **extra)


@pytest.fixture
def full_share(settings):
    """settings where a direct affiliate receives 100% of an order's fee."""
    return settings.model_copy(update={"rates": CommissionRates(direct_user_pct=Decimal("1"))})


def test_direct_affiliate_only(db, full_share, make_affiliate, attribute):
    """
    ORDER_PAID of 10000 with attribution [DIRECT 100%] -> one PENDING row of 10000.
    """
    affiliate = make_affiliate("u_direct")
    attribute("acct_1", affiliate)

    result = handle_event_db(db, full_share, _event("ord_1", "ORDER_PAID", "acct_1", 10_000))

    assert result["status"] == "applied"
    rows = ledger_rows(db)
    assert len(rows) == 1
    assert rows[0]["affiliate_id"] == affiliate["id"]
    assert rows[0]["tier"] == "DIRECT"
    assert rows[0]["amount_cents"] == 10_000
    assert rows[0]["status"] == PENDING


def test_two_tier_subscription(db, settings, make_affiliate, attribute):
    """
    sub-affiliate under a main affiliate, 3900 cent subscription:
    SUB 40% to the sub, PARENT 10% to the main.
    """
    main = make_affiliate("u_main")
    sub = make_affiliate("u_sub", parent_id=main["id"])
    attribute("acct_2", sub)

    handle_event_db(db, settings, _event("in_2", "INVOICE_PAID", "acct_2", 3900))

    rows = ledger_rows(db, "in_2")
    assert [(r["affiliate_id"], r["tier"], r["amount_cents"]) for r in rows] == [
        (sub["id"], "SUB", 1560),
        (main["id"], "PARENT", 390),
    ]
    assert sum(r["amount_cents"] for r in rows) <= 3900


def test_refund_after_available(db, full_share, make_affiliate, attribute, mature):
    """
    refund of a matured credit: one new row of -10000, net balance 0,
    original amount untouched.
    """
    affiliate = make_affiliate("u_refund")
    attribute("acct_3", affiliate)
    handle_event_db(db, full_share, _event("ord_3", "ORDER_PAID", "acct_3", 10_000))
    mature()
    assert ledger_rows(db)[0]["status"] == AVAILABLE

    result = handle_event_db(
        db, full_share, _event("re_3", "REFUND", "acct_3", 10_000, original_event_id="ord_3")
    )

    assert result["status"] == "applied"
    rows = ledger_rows(db, "ord_3")
    assert len(rows) == 2
    original, offset = rows
    assert original["amount_cents"] == 10_000
    assert offset["amount_cents"] == -10_000
    assert offset["reversal_of_id"] == original["id"]
    assert sum(r["amount_cents"] for r in rows) == 0

    net = balances((r["status"], r["carried_debt"], r["amount_cents"]) for r in rows)
    assert net["net"] == 0
    assert {r["status"] for r in rows} == {REVERSED}


def test_duplicate_webhook(db, full_share, make_affiliate, attribute):
    affiliate = make_affiliate("u_dup")
    attribute("acct_4", affiliate)
    event = _event("ord_4", "ORDER_PAID", "acct_4", 10_000)

    first = handle_event_db(db, full_share, event)
    replays = [handle_event_db(db, full_share, event) for _ in range(3)]

    assert first["status"] == "applied"
    assert all(r["status"] == "duplicate" and r["entries"] == [] for r in replays)
    assert len(ledger_rows(db)) == 1


def test_duplicate_refund_is_ignored(db, full_share, make_affiliate, attribute):
    affiliate = make_affiliate("u_dup_refund")
    attribute("acct_5", affiliate)
    handle_event_db(db, full_share, _event("ord_5", "ORDER_PAID", "acct_5", 10_000))

    refund = _event("re_5", "REFUND", "acct_5", 4000, original_event_id="ord_5")
    handle_event_db(db, full_share, refund)
    assert handle_event_db(db, full_share, refund)["status"] == "duplicate"

    rows = ledger_rows(db, "ord_5")
    assert [r["amount_cents"] for r in rows] == [10_000, -4000]


def test_unattributed_event(db, settings):
    result = handle_event_db(db, settings, _event("ord_6", "ORDER_PAID", "acct_nobody", 5000))

    assert result["status"] == "unattributed"
    assert ledger_rows(db) == []
    outcome = fetch_one(db, "SELECT outcome FROM processed_events WHERE event_id = %s", ("ord_6",))
    assert outcome == ("unattributed",)


def test_partial_refund_then_chargeback_conserves(db, settings, make_affiliate, attribute):
    """
    2500 credit (25% of 10000), refund of 4000 -> -1000, then a chargeback
    for the rest -> -1500. the event nets out to zero.
    """
    affiliate = make_affiliate("u_partial")
    attribute("acct_7", affiliate)
    handle_event_db(db, settings, _event("ord_7", "ORDER_PAID", "acct_7", 10_000))

    handle_event_db(db, settings, _event("re_7", "REFUND", "acct_7", 4000, original_event_id="ord_7"))
    rows = ledger_rows(db, "ord_7")
    assert [(r["amount_cents"], r["status"]) for r in rows] == [(2500, PENDING), (-1000, PENDING)]

    handle_event_db(db, settings, _event("cb_7", "CHARGEBACK", "acct_7", 10_000, original_event_id="ord_7"))
    rows = ledger_rows(db, "ord_7")
    assert [r["amount_cents"] for r in rows] == [2500, -1000, -1500]
    assert sum(r["amount_cents"] for r in rows) == 0


def test_refund_reverses_every_tier(db, settings, make_affiliate, attribute):
    main = make_affiliate("u_main_r")
    sub = make_affiliate("u_sub_r", parent_id=main["id"])
    attribute("acct_8", sub)
    handle_event_db(db, settings, _event("in_8", "INVOICE_PAID", "acct_8", 3900))

    handle_event_db(db, settings, _event("in_8", "REFUND", "acct_8", 3900))

    rows = ledger_rows(db, "in_8")
    assert len(rows) == 4
    by_affiliate = {}
    for r in rows:
        by_affiliate[r["affiliate_id"]] = by_affiliate.get(r["affiliate_id"], 0) + r["amount_cents"]
    assert by_affiliate == {sub["id"]: 0, main["id"]: 0}


def test_refund_uses_ledger_not_current_tree(db, settings, make_affiliate, attribute):
    """
    the affiliate that was credited is charged back even after the tree changes.
    """
    main = make_affiliate("u_old_main")
    sub = make_affiliate("u_old_sub", parent_id=main["id"])
    attribute("acct_9", sub)
    handle_event_db(db, settings, _event("in_9", "INVOICE_PAID", "acct_9", 3900))

    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute("UPDATE affiliates SET parent_affiliate_id = NULL WHERE id = %s", (sub["id"],))
        conn.commit()

    handle_event_db(db, settings, _event("re_9", "REFUND", "acct_9", 3900, original_event_id="in_9"))
    parent_rows = [r for r in ledger_rows(db, "in_9") if r["affiliate_id"] == main["id"]]
    assert [r["amount_cents"] for r in parent_rows] == [390, -390]


def test_refund_before_its_order_is_applied_later(db, full_share, make_affiliate, attribute):
    """
    the refund webhook overtakes the order it refunds: it is kept, and the
    order's credit is offset as soon as the order lands.
    """
    affiliate = make_affiliate("u_early")
    attribute("acct_16", affiliate)

    early = handle_event_db(
        db, full_share, _event("re_16", "REFUND", "acct_16", 10_000, original_event_id="ord_16")
    )
    assert early["status"] == "nothing_to_reverse"
    assert ledger_rows(db) == []

    result = handle_event_db(db, full_share, _event("ord_16", "ORDER_PAID", "acct_16", 10_000))

    assert result["status"] == "applied"
    assert [r["amount_cents"] for r in result["reversals"]] == [-10_000]
    rows = ledger_rows(db, "ord_16")
    assert [r["amount_cents"] for r in rows] == [10_000, -10_000]
    assert {r["status"] for r in rows} == {REVERSED}
    outcome = fetch_one(db, "SELECT outcome FROM processed_events WHERE event_id = %s", ("re_16",))
    assert outcome == ("applied",)

    # a redelivered refund stays a duplicate and is not applied twice
    replay = _event("re_16", "REFUND", "acct_16", 10_000, original_event_id="ord_16")
    assert handle_event_db(db, full_share, replay)["status"] == "duplicate"
    assert sum(r["amount_cents"] for r in ledger_rows(db, "ord_16")) == 0


def test_early_partial_refund_is_proportional(db, settings, make_affiliate, attribute):
    affiliate = make_affiliate("u_early_partial")
    attribute("acct_17", affiliate)

    handle_event_db(db, settings, _event("re_17", "REFUND", "acct_17", 4000, original_event_id="ord_17"))
    handle_event_db(db, settings, _event("ord_17", "ORDER_PAID", "acct_17", 10_000))

    rows = ledger_rows(db, "ord_17")
    assert [(r["amount_cents"], r["status"]) for r in rows] == [(2500, PENDING), (-1000, PENDING)]


def test_refund_without_original_is_recorded(db, settings):
    result = handle_event_db(db, settings, _event("re_x", "REFUND", "acct_x", 100, original_event_id="missing"))
    assert result["status"] == "nothing_to_reverse"
    assert ledger_rows(db) == []


def test_two_partial_refunds_of_one_order(db, settings, make_affiliate, attribute):
    """
    2500 credit on a 10000 order, two separate 3000 refunds: -750 each.
    """
    affiliate = make_affiliate("u_two_refunds")
    attribute("acct_18", affiliate)
    handle_event_db(db, settings, _event("ord_18", "ORDER_PAID", "acct_18", 10_000))

    first = handle_event_db(db, settings, _event("re_18a", "REFUND", "acct_18", 3000, original_event_id="ord_18"))
    second = handle_event_db(db, settings, _event("re_18b", "REFUND", "acct_18", 3000, original_event_id="ord_18"))

    assert first["status"] == "applied"
    assert second["status"] == "applied"
    rows = ledger_rows(db, "ord_18")
    assert [r["amount_cents"] for r in rows] == [2500, -750, -750]
    assert sum(r["amount_cents"] for r in rows) == 1000

    # a chargeback for the full order only takes what is left
    handle_event_db(db, settings, _event("cb_18", "CHARGEBACK", "acct_18", 10_000, original_event_id="ord_18"))
    assert sum(r["amount_cents"] for r in ledger_rows(db, "ord_18")) == 0


def test_suspended_affiliate_policy(db, settings, make_affiliate, attribute):
    affiliate = make_affiliate("u_suspended")
    attribute("acct_10", affiliate)
    set_affiliate_status_db(db, affiliate["id"], SUSPENDED)

    # default policy: suspension blocks payouts, not accrual
    handle_event_db(db, settings, _event("ord_10", "ORDER_PAID", "acct_10", 1000))
    assert len(ledger_rows(db, "ord_10")) == 1

    strict = settings.model_copy(update={"accrue_for_suspended": False})
    result = handle_event_db(db, strict, _event("ord_11", "ORDER_PAID", "acct_10", 1000))
    assert result["status"] == "applied"
    assert ledger_rows(db, "ord_11") == []


def test_failure_rolls_back_whole_event(db, settings, make_affiliate, attribute, monkeypatch):
    """
    a failure after the ledger rows were written leaves nothing behind,
    and redelivery of the same event is processed normally.
    """
    main = make_affiliate("u_main_tx")
    sub = make_affiliate("u_sub_tx", parent_id=main["id"])
    attribute("acct_12", sub)
    event = _event("in_12", "INVOICE_PAID", "acct_12", 3900)

    def boom(*args, **kwargs):
        raise RuntimeError("db went away")

    with monkeypatch.context() as m:
        m.setattr(ingest_db, "set_event_outcome", boom)
        with pytest.raises(RuntimeError):
            handle_event_db(db, settings, event)

    assert ledger_rows(db) == []
    assert fetch_one(db, "SELECT COUNT(*) FROM processed_events") == (0,)

    assert handle_event_db(db, settings, event)["status"] == "applied"
    assert len(ledger_rows(db)) == 2


def test_metadata_discount_share_is_applied(db, settings, make_affiliate, attribute):
    affiliate = make_affiliate("u_meta")
    attribute("acct_13", affiliate)
    event = InboundEvent.model_validate(
        {
            "eventId": "in_13",
            "type": "INVOICE_PAID",
            "accountId": "acct_13",
            "amountCents": 3900,
            "metadata": {"tier": "DIRECT", "promoCode": "X", "discountSharePct": 20},
        }
    )
    handle_event_db(db, settings, event)

    # 50% of 3900 = 1950, minus a 20% rebate of 390
    assert [r["amount_cents"] for r in ledger_rows(db)] == [1560]


def test_outbox_is_written_with_the_ledger(db, settings, make_affiliate, attribute):
    affiliate = make_affiliate("u_outbox")
    attribute("acct_14", affiliate)
    handle_event_db(db, settings, _event("ord_14", "ORDER_PAID", "acct_14", 1000))

    delivered = []
    summary = deliver_pending_notifications(db, sink=delivered.append)
    assert summary == {"sent": 1, "failed": 0, "retry": 0}
    assert delivered[0]["kind"] == "commission_credited"
    assert delivered[0]["payload"]["amount_cents"] == 250

    # nothing left to deliver
    assert deliver_pending_notifications(db, sink=delivered.append)["sent"] == 0


def test_outbox_delivery_failure_never_touches_ledger(db, settings, make_affiliate, attribute):
    affiliate = make_affiliate("u_outbox_fail")
    attribute("acct_15", affiliate)
    handle_event_db(db, settings, _event("ord_15", "ORDER_PAID", "acct_15", 1000))

    def broken_sink(notification):
        raise ConnectionError("smtp down")

    assert deliver_pending_notifications(db, sink=broken_sink, max_attempts=2) == {"sent": 0, "failed": 0, "retry": 1}
    assert deliver_pending_notifications(db, sink=broken_sink, max_attempts=2) == {"sent": 0, "failed": 1, "retry": 0}

    assert fetch_one(db, "SELECT status, attempts FROM notification_outbox") == ("FAILED", 2)
    assert [r["amount_cents"] for r in ledger_rows(db)] == [250]
