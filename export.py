import csv
import io
from typing import Any, Dict, Iterable

from db.db import Database
from db.repositories import get_affiliate_entries

LEDGER_CSV_COLUMNS = [
    "id",
    "created_at",
    "source_event_id",
    "event_type",
    "tier",
    "amount_cents",
    "status",
    "carried_debt",
    "payout_id",
    "available_at",
]


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def entries_to_csv(entries: Iterable[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=LEDGER_CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for entry in entries:
        writer.writerow({column: _cell(entry.get(column)) for column in LEDGER_CSV_COLUMNS})
    return buffer.getvalue()


def ledger_csv(db: Database, affiliate_id: int) -> str:
    """full ledger history of one affiliate, newest first."""
    with db.connection() as conn:
        entries = get_affiliate_entries(conn, affiliate_id)
    return entries_to_csv(entries)
