"""
inbound revenue/refund events as delivered by the payment webhook.

metadata is a closed union keyed on `tier`; anything else is rejected
here so ledger code never has to look inside free-form json.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

INVOICE_PAID = "INVOICE_PAID"
ORDER_PAID = "ORDER_PAID"
REFUND = "REFUND"
CHARGEBACK = "CHARGEBACK"

REVENUE_EVENT_TYPES = (INVOICE_PAID, ORDER_PAID)
REVERSAL_EVENT_TYPES = (REFUND, CHARGEBACK)
EVENT_TYPES = REVENUE_EVENT_TYPES + REVERSAL_EVENT_TYPES

DIRECT = "DIRECT"
SUB = "SUB"
PARENT = "PARENT"
TIERS = (DIRECT, SUB, PARENT)

EventType = Literal["INVOICE_PAID", "ORDER_PAID", "REFUND", "CHARGEBACK"]

# hard ceilings; the configured caps in CommissionRates are applied later
MAX_DIRECT_DISCOUNT_PCT = 80
MAX_SUB_DISCOUNT_PCT = 75


class _Meta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)


class DirectMeta(_Meta):
    tier: Literal["DIRECT"]
    promo_code: Optional[str] = Field(None, alias="promoCode")
    discount_share_pct: Optional[int] = Field(
        None, alias="discountSharePct", ge=0, le=MAX_DIRECT_DISCOUNT_PCT
    )


class SubMeta(_Meta):
    tier: Literal["SUB"]
    promo_code: Optional[str] = Field(None, alias="promoCode")
    discount_share_pct: Optional[int] = Field(
        None, alias="discountSharePct", ge=0, le=MAX_SUB_DISCOUNT_PCT
    )


class ParentMeta(_Meta):
    tier: Literal["PARENT"]
    sub_affiliate_id: Optional[int] = Field(None, alias="subAffiliateId")

    @property
    def promo_code(self) -> Optional[str]:
        return None

    @property
    def discount_share_pct(self) -> Optional[int]:
        return None


EventMetadata = Annotated[Union[DirectMeta, SubMeta, ParentMeta], Field(discriminator="tier")]


class InboundEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_id: str = Field(..., alias="eventId", min_length=1, max_length=255)
    type: EventType
    account_id: str = Field(..., alias="accountId", min_length=1)
    amount_cents: int = Field(..., alias="amountCents", ge=0)
    original_event_id: Optional[str] = Field(None, alias="originalEventId")
    attributed_sides: int = Field(1, alias="attributedSides", ge=1, le=2)
    metadata: Optional[EventMetadata] = None

    @model_validator(mode="after")
    def _reversal_fields(self):
        if self.original_event_id is not None and self.type not in REVERSAL_EVENT_TYPES:
            raise ValueError("originalEventId is only valid on REFUND/CHARGEBACK events")
        return self

    @property
    def is_reversal(self) -> bool:
        return self.type in REVERSAL_EVENT_TYPES

    @property
    def reversed_event_id(self) -> str:
        """source event a refund/chargeback applies to."""
        return self.original_event_id or self.event_id
