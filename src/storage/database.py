"""SQLite connection management and schema migrations."""

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiosqlite
import structlog

from src.exceptions import StorageError

logger = structlog.get_logger()

# (version, description, statements)
Migration = Tuple[int, str, List[str]]

MIGRATIONS: List[Migration] = [
    (
        1,
        "Initial key-value schema",
        [
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """,
        ],
    ),
    (
        2,
        "Index records by write time",
        [
            "CREATE INDEX IF NOT EXISTS idx_kv_updated_at ON kv(updated_at)",
        ],
    ),
]


def _parse_database_url(database_url: str) -> str:
    """Turn ``sqlite:///path`` (or a bare path) into a filesystem path."""
    if database_url.startswith("sqlite:///"):
        return database_url[len("sqlite:///") :]
    if database_url.startswith("sqlite://"):
        raise ValueError(f"Unsupported database URL: {database_url}")
    return database_url


class DatabaseManager:
    """Owns a single aiosqlite connection and the schema version."""

    def __init__(
        self,
        database_url: str,
        migrations: Optional[List[Migration]] = None,
    ) -> None:
        self.database_path = _parse_database_url(database_url)
        self._migrations = migrations if migrations is not None else MIGRATIONS
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        """Open the database and apply pending migrations."""
        if self._conn is not None:
            return

        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.database_path)
            self._conn.row_factory = sqlite3.Row
            await self._conn.execute("PRAGMA foreign_keys = ON")
            if self.database_path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode = WAL")
            await self._run_migrations(self._conn)
        except sqlite3.Error as exc:
            logger.error(
                "Database initialization failed",
                path=self.database_path,
                error=str(exc),
            )
            await self.close()
            raise StorageError(f"Failed to open database: {exc}") from exc

        logger.info("Database initialized", path=self.database_path)

    async def close(self) -> None:
        """Close the connection if open."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("Database closed", path=self.database_path)

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the open connection."""
        if self._conn is None:
            raise StorageError("Database not initialized")
        yield self._conn

    async def get_schema_version(self) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM schema_version"
            )
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Apply migrations newer than the recorded schema version."""

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cursor = await conn.execute(
            "SELECT COALESCE(MAX(version), 0) FROM schema_version"
        )
        row = await cursor.fetchone()
        current = row[0] if row else 0

        for version, description, statements in sorted(
            self._migrations, key=lambda migration: migration[0]
        ):
            if version <= current:
                continue
            for statement in statements:
                await conn.execute(statement)
            await conn.execute(
                "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                (version, description),
            )
            logger.info(
                "Applied migration", version=version, description=description
            )

        await conn.commit()
