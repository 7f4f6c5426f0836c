import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from pydantic import BaseModel, Field

from attribution_db import (
    assign_parent_db,
    attribute_account_db,
    create_affiliate_db,
    resolve,
    set_affiliate_status_db,
    set_custom_rates_db,
    set_payout_account_db,
)
from config import Settings, get_settings
from db.db import Database
from errors import InvalidPromoCode, LedgerError, NotFound, UnknownAttribution
from events import InboundEvent
from export import ledger_csv
from fee_engine import compute_buyer_total, compute_seller_payout
from ingest_db import handle_event_db
from ledger_db import release_matured_db
from logging_config import setup_logging
from payout_db import reconcile_payouts_db, run_payout_cycle_db
from promo_db import create_promo_code_db, redeem_promo_code_db, retire_promo_code_db, validate_promo_db
from promo_engine import invalid_response
from referral_engine import CustomRates
from stats_db import affiliate_stats_db, top_performers_db
from transfers import TransferClient, build_transfer_client


# ---------
# pydantic models (requests)
# ---------

class AffiliateCreateRequest(BaseModel):
    user_id: str = Field(..., description="platform user signing up as an affiliate")
    parent_affiliate_id: Optional[int] = Field(None, description="main affiliate to sign up under")
    payout_account_id: Optional[str] = None

class ParentAssignRequest(BaseModel):
    parent_affiliate_id: int

class AffiliateStatusRequest(BaseModel):
    status: Literal["ACTIVE", "SUSPENDED"]

class PayoutAccountRequest(BaseModel):
    payout_account_id: Optional[str] = Field(None, description="connected account receiving transfers")
    onboarding_completed: bool = False

class CustomRatesRequest(BaseModel):
    """fractions (0.3 == 30%); null keeps the global rate."""
    business_pct: Optional[Decimal] = Field(None, ge=0, le=1)
    parent_business_pct: Optional[Decimal] = Field(None, ge=0, le=1)
    user_pct: Optional[Decimal] = Field(None, ge=0, le=1)
    parent_user_pct: Optional[Decimal] = Field(None, ge=0, le=1)

class PromoCodeCreateRequest(BaseModel):
    affiliate_id: int
    code: str = Field(..., min_length=3, max_length=32)
    discount_share_pct: int = Field(0, ge=0, le=100)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)

class PromoValidateRequest(BaseModel):
    code: str

class PromoRedeemRequest(BaseModel):
    account_id: str
    code: str
    base_price_cents: int = Field(..., ge=0)

class AttributionRequest(BaseModel):
    account_id: str = Field(..., description="referred buyer/seller account")
    referral_code: str = Field(..., description="referral code from the signup link")

class PayoutRunRequest(BaseModel):
    affiliate_id: Optional[int] = Field(None, description="pay just this affiliate")


# ---------
# wiring
# ---------

def get_db(request: Request) -> Database:
    return request.app.state.db


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_transfer_client(request: Request) -> TransferClient:
    return request.app.state.transfer_client


def require_cron_secret(
    request: Request,
    x_cron_secret: Optional[str] = Header(None),
) -> None:
    """cron endpoints are open when no secret is configured."""
    expected = request.app.state.settings.cron_secret
    if expected is None:
        return
    if x_cron_secret is None or not secrets.compare_digest(x_cron_secret, expected.get_secret_value()):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    transfer_client: Optional[TransferClient] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    app = FastAPI(title="Affiliate Commission Ledger", version="0.1.0")
    app.state.settings = settings
    app.state.db = db or Database(settings.database_dsn)
    app.state.transfer_client = transfer_client or build_transfer_client(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    def ledger_error_handler(request: Request, exc: LedgerError):
        # invariant violations (illegal status moves etc.)
        logger.error("ledger error on {}: {}", request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    _register_routes(app)
    return app


def _bad_request(e: ValueError) -> HTTPException:
    status = 404 if isinstance(e, NotFound) else 400
    return HTTPException(status_code=status, detail=str(e))


# ---------
# endpoints
# ---------

def _register_routes(app: FastAPI) -> None:

    @app.post("/api/affiliates")
    def affiliate_create(payload: AffiliateCreateRequest, db: Database = Depends(get_db)):
        """
        sign a user up as an affiliate, optionally as a sub-affiliate of
        `parent_affiliate_id`. returns the affiliate with its referral code.
        """
        try:
            return create_affiliate_db(
                db,
                user_id=payload.user_id,
                parent_affiliate_id=payload.parent_affiliate_id,
                payout_account_id=payload.payout_account_id,
            )
        except ValueError as e:
            # already an affiliate, unknown parent, tree too deep
            raise _bad_request(e)

    @app.post("/api/affiliates/{affiliate_id}/parent")
    def affiliate_assign_parent(
        affiliate_id: int,
        payload: ParentAssignRequest,
        db: Database = Depends(get_db),
    ):
        try:
            return assign_parent_db(db, affiliate_id, payload.parent_affiliate_id)
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/affiliates/{affiliate_id}/status")
    def affiliate_status(
        affiliate_id: int,
        payload: AffiliateStatusRequest,
        db: Database = Depends(get_db),
    ):
        try:
            return set_affiliate_status_db(db, affiliate_id, payload.status)
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/affiliates/{affiliate_id}/payout-account")
    def affiliate_payout_account(
        affiliate_id: int,
        payload: PayoutAccountRequest,
        db: Database = Depends(get_db),
    ):
        try:
            return set_payout_account_db(
                db, affiliate_id, payload.payout_account_id, payload.onboarding_completed
            )
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/affiliates/{affiliate_id}/commission-rates")
    def affiliate_commission_rates(
        affiliate_id: int,
        payload: CustomRatesRequest,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        """negotiated shares; existing attributions keep the rates they were made with."""
        try:
            return set_custom_rates_db(db, settings, affiliate_id, CustomRates(**payload.model_dump()))
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/promo-codes")
    def promo_code_create(
        payload: PromoCodeCreateRequest,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        try:
            return create_promo_code_db(
                db,
                settings,
                affiliate_id=payload.affiliate_id,
                code=payload.code,
                discount_share_pct=payload.discount_share_pct,
                starts_at=payload.starts_at,
                ends_at=payload.ends_at,
                max_redemptions=payload.max_redemptions,
            )
        except ValueError as e:
            raise _bad_request(e)

    @app.delete("/api/promo-codes/{promo_code_id}")
    def promo_code_retire(promo_code_id: int, db: Database = Depends(get_db)):
        """used codes are disabled, unused ones deleted."""
        try:
            return retire_promo_code_db(db, promo_code_id)
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/promo/validate")
    def promo_validate(payload: PromoValidateRequest, db: Database = Depends(get_db)):
        """
        checkout-form check, no side effects.
        invalid codes answer 200 with {"valid": false, "error": <reason>}.
        """
        try:
            return validate_promo_db(db, payload.code).as_response()
        except InvalidPromoCode as e:
            return invalid_response(e)

    @app.post("/api/promo/redeem")
    def promo_redeem(
        payload: PromoRedeemRequest,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        try:
            return redeem_promo_code_db(
                db, settings, payload.account_id, payload.code, payload.base_price_cents
            )
        except InvalidPromoCode as e:
            raise HTTPException(status_code=400, detail=invalid_response(e))
        except ValueError as e:
            raise _bad_request(e)

    @app.post("/api/attributions")
    def attribution_create(
        payload: AttributionRequest,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        """
        record a signup through a referral link. the first attribution of an
        account wins; later ones answer {"status": "already_attributed"}.
        """
        try:
            return attribute_account_db(db, settings, payload.account_id, payload.referral_code)
        except ValueError as e:
            raise _bad_request(e)

    @app.get("/api/attributions/{account_id}/tiers")
    def attribution_tiers(
        account_id: str,
        event_type: Literal["INVOICE_PAID", "ORDER_PAID"] = Query("INVOICE_PAID"),
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        """which affiliates a revenue event on this account would credit, and at what share."""
        try:
            with db.connection() as conn:
                shares = resolve(conn, settings, account_id, event_type, datetime.now(timezone.utc))
        except UnknownAttribution as e:
            raise HTTPException(status_code=404, detail=str(e))

        return {
            "account_id": account_id,
            "event_type": event_type,
            "tiers": [
                {"affiliate_id": s.affiliate_id, "tier": s.tier, "share_pct": str(s.share_pct)}
                for s in shares
            ],
        }

    @app.post("/api/webhook/events")
    def webhook_events(
        payload: InboundEvent,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ):
        """
        payment event ingestion webhook.
        returns 'applied', 'duplicate', 'unattributed' or 'nothing_to_reverse'.
        """
        try:
            return handle_event_db(db, settings, payload)
        except ValueError as e:
            raise _bad_request(e)

    @app.get("/api/fees/quote")
    def fees_quote(
        subtotal_cents: int = Query(..., ge=0),
        subscription_tier: Optional[str] = Query(None, description="seller plan: BASIC, PRO or PREMIUM"),
    ):
        """what the buyer pays and what the seller keeps for a sale."""
        return {
            **compute_buyer_total(subtotal_cents),
            **compute_seller_payout(subtotal_cents, subscription_tier),
        }

    @app.post("/api/ledger/release", dependencies=[Depends(require_cron_secret)])
    def ledger_release(db: Database = Depends(get_db)):
        return release_matured_db(db)

    @app.post("/api/payouts/run", dependencies=[Depends(require_cron_secret)])
    def payouts_run(
        payload: Optional[PayoutRunRequest] = None,
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        transfer_client: TransferClient = Depends(get_transfer_client),
    ):
        affiliate_id = payload.affiliate_id if payload is not None else None
        payouts = run_payout_cycle_db(db, settings, transfer_client, affiliate_id=affiliate_id)
        return {"payouts": payouts}

    @app.post("/api/payouts/reconcile", dependencies=[Depends(require_cron_secret)])
    def payouts_reconcile(
        db: Database = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        transfer_client: TransferClient = Depends(get_transfer_client),
    ):
        return reconcile_payouts_db(db, settings, transfer_client)

    @app.get("/api/admin/affiliates/top")
    def admin_top_affiliates(
        limit: int = Query(10, ge=1, le=100, description="how many affiliates to rank"),
        db: Database = Depends(get_db),
    ):
        return {"limit": limit, "affiliates": top_performers_db(db, limit)}

    @app.get("/api/admin/affiliates/{affiliate_id}/stats")
    def admin_affiliate_stats(affiliate_id: int, db: Database = Depends(get_db)):
        """
        lifetime totals by tier and by event type, trailing 12 months of
        income (zero-filled) and pending/available/paid balances.
        """
        return affiliate_stats_db(db, affiliate_id)

    @app.get("/api/affiliates/{affiliate_id}/ledger.csv", response_class=PlainTextResponse)
    def affiliate_ledger_csv(affiliate_id: int, db: Database = Depends(get_db)):
        return PlainTextResponse(
            ledger_csv(db, affiliate_id),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="affiliate-{affiliate_id}-ledger.csv"'},
        )


app = create_app()
