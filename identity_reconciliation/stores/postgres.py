import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row

from ..contacts import StoreError, StoreUnavailable
from .base import SQLContactSession, SQLContactStore

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id SERIAL PRIMARY KEY,
        phone_number TEXT,
        email TEXT,
        linked_id INTEGER REFERENCES contacts (id),
        link_precedence TEXT NOT NULL CHECK (link_precedence IN ('primary', 'secondary')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_idx ON contacts (email)",
    "CREATE INDEX IF NOT EXISTS phone_number_idx ON contacts (phone_number)",
    "CREATE INDEX IF NOT EXISTS linked_id_idx ON contacts (linked_id)",
]


class PostgresContactSession(SQLContactSession):
    """Session over one psycopg connection inside an open transaction."""

    placeholder = "%s"

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[Mapping[str, Any]]:
        with self.conn.cursor() as cur:
            cur.execute(sql, tuple(params))
            return cur.fetchall()

    def _execute(self, sql: str, params: Sequence[Any]) -> None:
        with self.conn.cursor() as cur:
            cur.execute(sql, tuple(params))

    def _insert_row(self, values: Tuple[Any, ...]) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO contacts (phone_number, email, linked_id, link_precedence, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                values,
            )
            return cur.fetchone()["id"]

    def _lock_clause(self, for_update: bool) -> str:
        return "\n    FOR UPDATE OF contacts" if for_update else ""

    def _lock_keys(self, keys: Sequence[str]) -> None:
        # Row locks cannot cover a value nobody has inserted yet; the
        # advisory locks make first-time submissions of a key queue up too.
        with self.conn.cursor() as cur:
            for key in keys:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))


class PostgresContactStore(SQLContactStore):
    def __init__(self, database_url: str, lock_timeout: Optional[float] = None):
        self.database_url = database_url
        self.lock_timeout = lock_timeout

    def connect(self) -> psycopg.Connection:
        kwargs = {}
        if self.lock_timeout:
            kwargs["options"] = f"-c lock_timeout={int(self.lock_timeout * 1000)}"
        try:
            return psycopg.connect(self.database_url, row_factory=dict_row, **kwargs)
        except psycopg.OperationalError as e:
            raise StoreUnavailable(f"cannot connect to PostgreSQL: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[PostgresContactSession]:
        conn = self.connect()
        try:
            with conn.transaction():
                yield PostgresContactSession(conn)
        except psycopg.errors.DeadlockDetected as e:
            # the server is reachable; this transaction lost a lock cycle
            logger.error(f"PostgreSQL deadlock, transaction rolled back: {e}")
            raise StoreError(f"lock contention: {e}") from e
        except psycopg.OperationalError as e:
            logger.error(f"PostgreSQL transaction failed: {e}")
            raise StoreUnavailable(str(e)) from e
        except psycopg.Error as e:
            logger.error(f"PostgreSQL transaction failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def create_schema(self) -> None:
        with self.transaction() as session:
            for statement in SCHEMA:
                session._execute(statement, ())
        logger.info("PostgreSQL schema ready")

    def __repr__(self) -> str:
        return "PostgresContactStore()"
