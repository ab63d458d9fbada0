import logging
from typing import Optional
from urllib.parse import urlparse

from .contacts import ContactStore
from .stores.sqlite import SQLiteContactStore

logger = logging.getLogger(__name__)

DB_NAME = "contacts.db"
DEFAULT_DATABASE_URL = f"sqlite:///{DB_NAME}"

SQLITE_SCHEMES = ("sqlite",)
POSTGRES_SCHEMES = ("postgres", "postgresql")


class UnsupportedDatabaseURL(ValueError):
    pass


def database_backend(database_url: str) -> str:
    scheme = urlparse(database_url).scheme.split("+", 1)[0]
    if scheme in SQLITE_SCHEMES:
        return "sqlite"
    if scheme in POSTGRES_SCHEMES:
        return "postgres"
    raise UnsupportedDatabaseURL(f"unsupported database url scheme: {scheme or database_url!r}")


def sqlite_path(database_url: str) -> str:
    """sqlite:///relative.db -> relative.db, sqlite:////abs/x.db -> /abs/x.db"""
    path = database_url.split(":///", 1)[1] if ":///" in database_url else ""
    if not path:
        raise UnsupportedDatabaseURL(f"sqlite url has no database path: {database_url!r}")
    return path


def create_store(database_url: str = DEFAULT_DATABASE_URL, lock_timeout: Optional[float] = None) -> ContactStore:
    backend = database_backend(database_url)
    if backend == "sqlite":
        path = sqlite_path(database_url)
        if lock_timeout is None:
            return SQLiteContactStore(path)
        return SQLiteContactStore(path, busy_timeout=lock_timeout)

    from .stores.postgres import PostgresContactStore

    # psycopg does not understand SQLAlchemy-style driver suffixes
    url = database_url.replace("postgresql+psycopg://", "postgresql://", 1)
    return PostgresContactStore(url, lock_timeout=lock_timeout)


def init_db(store: ContactStore) -> None:
    store.create_schema()
    logger.info(f"Contacts schema initialised on {store!r}")
