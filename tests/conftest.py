"""
DB-backed tests run against a real PostgreSQL database.

point AFFILIATE_TEST_DSN at a throwaway database; every table is truncated
before each test. without a reachable server those tests are skipped.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import psycopg
import pytest

from attribution_db import attribute_account_db, create_affiliate_db, set_payout_account_db
from config import Settings
from db.db import Database
from ledger_db import release_matured_db

TABLES = """
    notification_outbox, commission_ledger, affiliate_payouts, processed_events,
    attributions, promo_codes, affiliates
"""


@pytest.fixture
def settings() -> Settings:
    base = Settings(_env_file=None)
    return Settings(
        _env_file=None,
        database_dsn=os.environ.get("AFFILIATE_TEST_DSN") or base.database_dsn,
        stripe_secret_key=None,
        cron_secret=None,
    )


@pytest.fixture(scope="session")
def _schema_db() -> Database:
    dsn = os.environ.get("AFFILIATE_TEST_DSN") or Settings(_env_file=None).database_dsn
    database = Database(dsn, connect_timeout=3)
    try:
        database.apply_schema()
    except psycopg.OperationalError as e:
        pytest.skip(f"no test database available: {e}")
    return database


@pytest.fixture
def db(_schema_db: Database) -> Database:
    with _schema_db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(f"TRUNCATE {TABLES} RESTART IDENTITY CASCADE")
        conn.commit()
    return _schema_db


@pytest.fixture
def make_affiliate(db: Database):
    """create an affiliate, optionally under a parent and ready for payouts."""

    def _make(user_id: str, parent_id: Optional[int] = None, payable: bool = False):
        affiliate = create_affiliate_db(db, user_id, parent_affiliate_id=parent_id)
        if payable:
            set_payout_account_db(db, affiliate["id"], f"acct_{user_id}", True)
        return affiliate

    return _make


@pytest.fixture
def attribute(db: Database, settings: Settings):
    def _attribute(account_id: str, affiliate: dict):
        return attribute_account_db(db, settings, account_id, affiliate["referral_code"])

    return _attribute


@pytest.fixture
def mature(db: Database):
    """release everything recorded so far, as if the hold period had elapsed."""

    def _mature(days: int = 15):
        return release_matured_db(db, now=datetime.now(timezone.utc) + timedelta(days=days))

    return _mature


def ledger_rows(db: Database, source_event_id: Optional[str] = None):
    query = """
        SELECT id, affiliate_id, event_type, tier, amount_cents, status,
               carried_debt, reversal_of_id, payout_id
        FROM commission_ledger
    """
    params = ()
    if source_event_id is not None:
        # offsets are keyed by the refund/chargeback, grouped under the order they reverse
        query += " WHERE source_event_id = %s OR original_source_event_id = %s"
        params = (source_event_id, source_event_id)
    query += " ORDER BY id"

    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
    keys = [
        "id",
        "affiliate_id",
        "event_type",
        "tier",
        "amount_cents",
        "status",
        "carried_debt",
        "reversal_of_id",
        "payout_id",
    ]
    return [dict(zip(keys, r)) for r in rows]


def fetch_one(db: Database, sql: str, params=()):
    with db.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()
