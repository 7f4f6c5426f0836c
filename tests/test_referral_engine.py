from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from config import CommissionRates
from errors import AffiliateTreeError
from events import DIRECT, INVOICE_PAID, ORDER_PAID, PARENT, REFUND, SUB
from referral_engine import (
    ACTIVE,
    SOURCE_PROMO_CODE,
    SUSPENDED,
    Attribution,
    CustomRates,
    TierShare,
    apply_suspension_policy,
    build_attribution,
    check_custom_rates,
    check_parent_assignment,
    compute_credits,
    effective_rates,
    get_chain,
    resolve_tiers,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
RATES = CommissionRates()


def _attribution(affiliate_id=1, parent_id=None, has_l2=None, discount=0, custom=None):
    tree = {affiliate_id: parent_id} if parent_id is not None else {}
    return build_attribution(
        "acct_1",
        affiliate_id,
        parent_of=tree.get,
        now=NOW,
        window_days=365,
        discount_share_pct=discount,
        has_l2=has_l2,
        custom_rates=custom,
    )


def test_self_parenting_is_rejected():
    with pytest.raises(AffiliateTreeError):
        check_parent_assignment(1, 1, parent_of={}.get)


def test_parent_assignment_prevents_cycles():
    """
    1 is the parent of 2, so 2 can never become the parent of 1.
    """
    tree = {2: 1}
    with pytest.raises(AffiliateTreeError):
        check_parent_assignment(1, 2, parent_of=tree.get)


def test_tree_is_at_most_two_levels_deep():
    tree = {2: 1}

    # 2 is already a sub, it cannot have subs of its own
    with pytest.raises(AffiliateTreeError):
        check_parent_assignment(3, 2, parent_of=tree.get)

    # an affiliate with subs cannot become a sub
    with pytest.raises(AffiliateTreeError):
        check_parent_assignment(1, 4, parent_of=tree.get, child_has_subs=True)

    # plain main -> sub link is fine
    check_parent_assignment(3, 1, parent_of=tree.get)


def test_tree_errors_are_value_errors():
    with pytest.raises(ValueError):
        check_parent_assignment(7, 7, parent_of={}.get)


def test_get_chain():
    tree = {2: 1}
    assert get_chain(2, tree.get) == [2, 1]
    assert get_chain(1, tree.get) == [1, None]


def test_build_attribution_snapshots_parent():
    attribution = _attribution(affiliate_id=2, parent_id=1)
    assert attribution.parent_affiliate_id == 1
    assert attribution.has_l2 is True
    assert attribution.ends_at == NOW + timedelta(days=365)
    assert attribution.credits_parent

    solo = _attribution(affiliate_id=1)
    assert solo.parent_affiliate_id is None
    assert solo.has_l2 is False
    assert not solo.credits_parent


def test_attribution_window():
    attribution = _attribution()
    assert attribution.is_active(NOW)
    assert attribution.is_active(NOW + timedelta(days=365))
    assert not attribution.is_active(NOW + timedelta(days=366))
    assert not attribution.is_active(NOW - timedelta(seconds=1))


def test_resolve_direct_only():
    tiers = resolve_tiers(_attribution(affiliate_id=5), INVOICE_PAID, RATES)
    assert tiers == [TierShare(5, DIRECT, Decimal("0.50"))]


def test_resolve_sub_and_parent():
    tiers = resolve_tiers(_attribution(affiliate_id=2, parent_id=1), INVOICE_PAID, RATES)
    assert tiers == [
        TierShare(2, SUB, Decimal("0.40")),
        TierShare(1, PARENT, Decimal("0.10")),
    ]

    tiers = resolve_tiers(_attribution(affiliate_id=2, parent_id=1), ORDER_PAID, RATES)
    assert [t.share_pct for t in tiers] == [Decimal("0.20"), Decimal("0.05")]


def test_resolve_without_l2_ignores_parent():
    """a code created without hasL2 credits only the owner, even if it has a parent."""
    tiers = resolve_tiers(_attribution(affiliate_id=2, parent_id=1, has_l2=False), INVOICE_PAID, RATES)
    assert [t.tier for t in tiers] == [DIRECT]


def test_resolve_rejects_non_revenue_events():
    with pytest.raises(ValueError):
        resolve_tiers(_attribution(), REFUND, RATES)


def test_direct_affiliate_only_credit():
    """
    ORDER_PAID 10000 with a 100% direct share -> one credit of 10000.
    """
    rates = CommissionRates(direct_user_pct=Decimal("1"))
    credits = compute_credits(_attribution(affiliate_id=9), ORDER_PAID, 10_000, rates)
    assert len(credits) == 1
    assert credits[0].affiliate_id == 9
    assert credits[0].tier == DIRECT
    assert credits[0].amount_cents == 10_000


def test_two_tier_subscription_credits():
    """
    3900 cent subscription through a sub-affiliate: SUB 40%, PARENT 10%.
    """
    credits = compute_credits(_attribution(affiliate_id=2, parent_id=1), INVOICE_PAID, 3900, RATES)
    assert [(c.affiliate_id, c.tier, c.amount_cents) for c in credits] == [
        (2, SUB, 1560),
        (1, PARENT, 390),
    ]
    assert sum(c.amount_cents for c in credits) <= 3900
    assert all(c.base_amount_cents == 3900 for c in credits)


def test_discount_share_from_event_overrides_snapshot():
    attribution = _attribution(affiliate_id=2, parent_id=1, discount=0)
    credits = compute_credits(attribution, INVOICE_PAID, 3900, RATES, discount_share_pct=20)
    sub = credits[0]
    assert sub.amount_cents == 1248
    assert sub.discount_cents == 312
    # the parent's share is never discounted
    assert credits[1].amount_cents == 390


def test_discount_share_falls_back_to_attribution():
    attribution = _attribution(affiliate_id=2, parent_id=1, discount=20)
    credits = compute_credits(attribution, INVOICE_PAID, 3900, RATES)
    assert credits[0].amount_cents == 1248


def test_two_sided_order():
    credits = compute_credits(_attribution(affiliate_id=3), ORDER_PAID, 1000, RATES, sides=2)
    assert credits[0].amount_cents == 500


def test_zero_amount_produces_no_credits():
    assert compute_credits(_attribution(), ORDER_PAID, 0, RATES) == []


def test_promo_attribution_source():
    attribution = build_attribution(
        "acct_2", 1, parent_of={}.get, now=NOW, window_days=30, source=SOURCE_PROMO_CODE, promo_code_id=4
    )
    assert isinstance(attribution, Attribution)
    assert attribution.source == SOURCE_PROMO_CODE
    assert attribution.promo_code_id == 4


def test_suspension_policy():
    credits = compute_credits(_attribution(affiliate_id=2, parent_id=1), INVOICE_PAID, 3900, RATES)
    statuses = {1: SUSPENDED, 2: ACTIVE}

    kept, dropped = apply_suspension_policy(credits, statuses, accrue_for_suspended=True)
    assert kept == credits
    assert dropped == []

    kept, dropped = apply_suspension_policy(credits, statuses, accrue_for_suspended=False)
    assert [c.affiliate_id for c in kept] == [2]
    assert [c.affiliate_id for c in dropped] == [1]


def test_custom_rates_override_sub_and_parent_shares():
    """
    sub negotiated 45% business, its parent 5%: 3900 -> 1755 + 195.
    """
    custom = CustomRates(business_pct=Decimal("0.45"), parent_business_pct=Decimal("0.05"))
    attribution = _attribution(affiliate_id=2, parent_id=1, custom=custom)

    tiers = resolve_tiers(attribution, INVOICE_PAID, RATES)
    assert tiers == [
        TierShare(2, SUB, Decimal("0.45")),
        TierShare(1, PARENT, Decimal("0.05")),
    ]

    credits = compute_credits(attribution, INVOICE_PAID, 3900, RATES)
    assert [(c.tier, c.amount_cents) for c in credits] == [(SUB, 1755), (PARENT, 195)]

    # user transaction shares were not customised
    assert [t.share_pct for t in resolve_tiers(attribution, ORDER_PAID, RATES)] == [
        Decimal("0.20"),
        Decimal("0.05"),
    ]


def test_custom_user_rate_for_direct_affiliate():
    attribution = _attribution(affiliate_id=3, custom=CustomRates(user_pct=Decimal("0.30")))
    credits = compute_credits(attribution, ORDER_PAID, 10_000, RATES)
    assert [(c.tier, c.amount_cents) for c in credits] == [(DIRECT, 3000)]


def test_no_custom_rates_keeps_global_rates():
    assert effective_rates(_attribution(affiliate_id=2, parent_id=1), RATES) is RATES
    assert _attribution().custom_rates == CustomRates()


def test_check_custom_rates():
    ok = CustomRates(business_pct=Decimal("0.60"), parent_business_pct=Decimal("0.40"))
    assert check_custom_rates(ok, RATES, is_sub=True) == ok

    for custom in [
        CustomRates(business_pct=Decimal("0.95")),  # 0.95 + default parent 0.10
        CustomRates(user_pct=Decimal("0.50"), parent_user_pct=Decimal("0.51")),
        CustomRates(parent_user_pct=Decimal("1.5")),
        CustomRates(business_pct=Decimal("-0.1")),
    ]:
        with pytest.raises(ValueError):
            check_custom_rates(custom, RATES, is_sub=True)

    # a top-level affiliate's own share is checked as DIRECT
    check_custom_rates(CustomRates(business_pct=Decimal("0.90")), RATES, is_sub=False)
