"""Ordered key-value stores backing the chat memory records."""

import sqlite3
from typing import Dict, List, Optional, Protocol, Tuple

import structlog

from src.exceptions import StorageError

from .database import DatabaseManager

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Ordered keyed store with atomic replace-by-key."""

    async def get(self, key: str) -> Optional[str]:
        """Return the value stored under key, or None."""
        ...

    async def put(self, key: str, value: str) -> None:
        """Insert or atomically replace the value under key."""
        ...

    async def delete(self, key: str) -> None:
        """Remove key; unknown keys are ignored."""
        ...

    async def scan(self, prefix: str) -> List[Tuple[str, str]]:
        """Return all (key, value) pairs whose key starts with prefix, by key."""
        ...


def _prefix_upper_bound(prefix: str) -> Optional[str]:
    """Smallest string greater than every string starting with prefix."""
    if not prefix:
        return None
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class InMemoryKeyValueStore:
    """Dict-backed store for tests and throwaway sessions."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def scan(self, prefix: str) -> List[Tuple[str, str]]:
        return sorted(
            (key, value)
            for key, value in self._data.items()
            if key.startswith(prefix)
        )

    def __len__(self) -> int:
        return len(self._data)


class SQLiteKeyValueStore:
    """Key-value store on the ``kv`` table of a DatabaseManager.

    Every sqlite error is surfaced as StorageError so lost writes are
    observable by the caller.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db = db_manager

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self.db.get_connection() as conn:
                cursor = await conn.execute(
                    "SELECT value FROM kv WHERE key = ?", (key,)
                )
                row = await cursor.fetchone()
                return row[0] if row else None
        except sqlite3.Error as exc:
            logger.error("Key-value read failed", key=key, error=str(exc))
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    async def put(self, key: str, value: str) -> None:
        try:
            async with self.db.get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value),
                )
                await conn.commit()
        except sqlite3.Error as exc:
            logger.error("Key-value write failed", key=key, error=str(exc))
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self.db.get_connection() as conn:
                await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                await conn.commit()
        except sqlite3.Error as exc:
            logger.error("Key-value delete failed", key=key, error=str(exc))
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    async def scan(self, prefix: str) -> List[Tuple[str, str]]:
        upper = _prefix_upper_bound(prefix)
        try:
            async with self.db.get_connection() as conn:
                if upper is None:
                    cursor = await conn.execute(
                        "SELECT key, value FROM kv ORDER BY key"
                    )
                else:
                    cursor = await conn.execute(
                        """
                        SELECT key, value FROM kv
                        WHERE key >= ? AND key < ?
                        ORDER BY key
                        """,
                        (prefix, upper),
                    )
                rows = await cursor.fetchall()
                return [(row[0], row[1]) for row in rows]
        except sqlite3.Error as exc:
            logger.error("Key-value scan failed", prefix=prefix, error=str(exc))
            raise StorageError(f"Failed to scan {prefix}: {exc}") from exc
