"""
runtime settings for the affiliate ledger.

everything is read from environment variables prefixed with AFFILIATE_
(or a local .env file). nested commission rates use a double underscore,
e.g. AFFILIATE_RATES__DIRECT_BUSINESS_PCT=0.45
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommissionRates(BaseModel):
    """share percentages as fractions (0.25 == 25%), discount caps as 0-100."""

    direct_business_pct: Decimal = Decimal("0.50")
    sub_business_pct: Decimal = Decimal("0.40")
    parent_business_pct: Decimal = Decimal("0.10")

    direct_user_pct: Decimal = Decimal("0.25")
    sub_user_pct: Decimal = Decimal("0.20")
    parent_user_pct: Decimal = Decimal("0.05")

    main_max_discount_pct: int = Field(80, ge=0, le=100)
    sub_max_discount_pct: int = Field(75, ge=0, le=100)

    main_min_commission_pct: Decimal = Decimal("0.20")
    sub_min_commission_pct: Decimal = Decimal("0.20")

    @field_validator(
        "direct_business_pct",
        "sub_business_pct",
        "parent_business_pct",
        "direct_user_pct",
        "sub_user_pct",
        "parent_user_pct",
        "main_min_commission_pct",
        "sub_min_commission_pct",
    )
    @classmethod
    def _fraction(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("rate must be between 0 and 1")
        return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AFFILIATE_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_dsn: str = "dbname=affiliates user=affiliates password=secret host=localhost port=5432"

    currency: str = "eur"
    hold_days: int = Field(14, ge=0, description="days before a credit becomes AVAILABLE")
    attribution_window_days: int = Field(365, ge=1)
    min_payout_cents: int = Field(1000, ge=1)
    accrue_for_suspended: bool = Field(
        True,
        description="suspended affiliates keep accruing PENDING credit; payouts stay blocked",
    )

    transfer_timeout_seconds: float = Field(10.0, gt=0)
    payout_stale_after_seconds: int = Field(900, ge=1)
    stripe_secret_key: Optional[SecretStr] = None
    stripe_api_base: str = "https://api.stripe.com"

    cron_secret: Optional[SecretStr] = None
    outbox_max_attempts: int = Field(5, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    rates: CommissionRates = Field(default_factory=CommissionRates)

    @field_validator("stripe_secret_key", "cron_secret", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
