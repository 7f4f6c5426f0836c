from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import psycopg
from loguru import logger

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class Database:
    """
    explicit handle to the ledger database.
    built once at startup and handed to every component; there is no
    module-level connection state.
    """

    def __init__(self, dsn: str, connect_timeout: int = 10):
        self.dsn = dsn
        self.connect_timeout = connect_timeout

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """
        context manager for one Postgres connection.
        autocommit is disabled so callers manage transactions explicitly.
        """
        with psycopg.connect(self.dsn, connect_timeout=self.connect_timeout) as conn:
            conn.autocommit = False
            yield conn

    def apply_schema(self) -> None:
        sql = SCHEMA_PATH.read_text()
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()
        logger.info("ledger schema applied")
