"""Persistence layer: SQLite connection management and key-value stores."""

from .database import DatabaseManager
from .kv import InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore

__all__ = [
    "DatabaseManager",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
]
