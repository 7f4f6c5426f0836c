import pytest
from pydantic import ValidationError

from events import DirectMeta, InboundEvent, ParentMeta, SubMeta


def test_revenue_event_with_camel_case_fields():
    event = InboundEvent.model_validate(
        {
            "eventId": "in_1",
            "type": "INVOICE_PAID",
            "accountId": "acct_1",
            "amountCents": 3900,
            "metadata": {"tier": "SUB", "promoCode": "SPRING20", "discountSharePct": 20},
        }
    )
    assert event.event_id == "in_1"
    assert event.attributed_sides == 1
    assert isinstance(event.metadata, SubMeta)
    assert event.metadata.discount_share_pct == 20
    assert not event.is_reversal


def test_metadata_is_a_closed_union():
    direct = InboundEvent.model_validate(
        {"eventId": "e", "type": "ORDER_PAID", "accountId": "a", "amountCents": 1, "metadata": {"tier": "DIRECT"}}
    )
    assert isinstance(direct.metadata, DirectMeta)

    parent = InboundEvent.model_validate(
        {
            "eventId": "e",
            "type": "ORDER_PAID",
            "accountId": "a",
            "amountCents": 1,
            "metadata": {"tier": "PARENT", "subAffiliateId": 4},
        }
    )
    assert isinstance(parent.metadata, ParentMeta)
    assert parent.metadata.discount_share_pct is None

    for bad in [
        {"tier": "GRANDPARENT"},
        {"promoCode": "X"},
        {"tier": "DIRECT", "unexpected": True},
        {"tier": "PARENT", "discountSharePct": 10},
    ]:
        with pytest.raises(ValidationError):
            InboundEvent.model_validate(
                {"eventId": "e", "type": "ORDER_PAID", "accountId": "a", "amountCents": 1, "metadata": bad}
            )


def test_discount_share_capped_per_tier():
    base = {"eventId": "e", "type": "INVOICE_PAID", "accountId": "a", "amountCents": 3900}

    InboundEvent.model_validate({**base, "metadata": {"tier": "DIRECT", "discountSharePct": 80}})
    with pytest.raises(ValidationError):
        InboundEvent.model_validate({**base, "metadata": {"tier": "DIRECT", "discountSharePct": 81}})
    with pytest.raises(ValidationError):
        InboundEvent.model_validate({**base, "metadata": {"tier": "SUB", "discountSharePct": 76}})


def test_amount_and_sides_bounds():
    base = {"eventId": "e", "type": "ORDER_PAID", "accountId": "a"}
    with pytest.raises(ValidationError):
        InboundEvent.model_validate({**base, "amountCents": -1})
    with pytest.raises(ValidationError):
        InboundEvent.model_validate({**base, "amountCents": 1, "attributedSides": 3})
    with pytest.raises(ValidationError):
        InboundEvent.model_validate({**base, "type": "PAYOUT", "amountCents": 1})


def test_reversal_events():
    refund = InboundEvent.model_validate(
        {"eventId": "re_1", "type": "REFUND", "accountId": "a", "amountCents": 500, "originalEventId": "in_1"}
    )
    assert refund.is_reversal
    assert refund.reversed_event_id == "in_1"

    # without originalEventId the event id itself names the charge
    chargeback = InboundEvent(event_id="in_1", type="CHARGEBACK", account_id="a", amount_cents=500)
    assert chargeback.reversed_event_id == "in_1"

    with pytest.raises(ValidationError):
        InboundEvent.model_validate(
            {"eventId": "x", "type": "ORDER_PAID", "accountId": "a", "amountCents": 1, "originalEventId": "y"}
        )
