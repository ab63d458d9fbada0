import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..contacts import StoreError, StoreUnavailable
from .base import SQLContactSession, SQLContactStore

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phone_number TEXT,
        email TEXT,
        linked_id INTEGER,
        link_precedence TEXT NOT NULL CHECK(link_precedence IN ('secondary', 'primary')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT,
        FOREIGN KEY (linked_id) REFERENCES contacts (id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS email_idx ON contacts (email)",
    "CREATE INDEX IF NOT EXISTS phone_number_idx ON contacts (phone_number)",
    "CREATE INDEX IF NOT EXISTS linked_id_idx ON contacts (linked_id)",
]


class SQLiteContactSession(SQLContactSession):
    """Session over one sqlite3 connection.

    SQLite has no row locks. Transactions are opened with BEGIN IMMEDIATE,
    which holds the database write lock until commit, so for_update needs
    no extra clause here.
    """

    placeholder = "?"

    def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[Mapping[str, Any]]:
        cursor = self.conn.execute(sql, tuple(params))
        return [dict(row) for row in cursor.fetchall()]

    def _execute(self, sql: str, params: Sequence[Any]) -> None:
        self.conn.execute(sql, tuple(params))

    def _insert_row(self, values: Tuple[Any, ...]) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO contacts (phone_number, email, linked_id, link_precedence, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            values,
        )
        return cursor.lastrowid

    def _to_db_time(self, value: datetime) -> str:
        return value.isoformat(timespec="microseconds")

    def _from_db_time(self, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return datetime.fromisoformat(value)


class SQLiteContactStore(SQLContactStore):
    def __init__(self, path: str, busy_timeout: float = 30.0):
        self.path = path
        self.busy_timeout = busy_timeout

    def get_db_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open sqlite database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[SQLiteContactSession]:
        conn = self.get_db_connection()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield SQLiteContactSession(conn)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            logger.error(f"SQLite transaction failed: {e}")
            raise StoreUnavailable(str(e)) from e
        except sqlite3.Error as e:
            logger.error(f"SQLite transaction failed: {e}")
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def create_schema(self) -> None:
        conn = self.get_db_connection()
        try:
            for statement in SCHEMA:
                conn.execute(statement)
        except sqlite3.Error as e:
            raise StoreError(f"schema creation failed: {e}") from e
        finally:
            conn.close()
        logger.info(f"SQLite schema ready at {self.path}")

    def __repr__(self) -> str:
        return f"SQLiteContactStore(path={self.path!r})"
