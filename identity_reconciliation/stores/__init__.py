"""Contact store adapters. The linking engine only sees the ContactStore protocol."""

from .base import SQLContactSession, SQLContactStore
from .sqlite import SQLiteContactStore

__all__ = ["SQLContactSession", "SQLContactStore", "SQLiteContactStore"]
