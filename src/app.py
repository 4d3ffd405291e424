"""Application wiring for the chat memory core."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from src.config.logging import configure_logging
from src.config.settings import Settings, get_settings
from src.memory.service import MemoryService
from src.memory.store import MemoryStore
from src.memory.summarizer import Summarizer, create_summarizer
from src.storage.database import DatabaseManager
from src.storage.kv import SQLiteKeyValueStore

logger = structlog.get_logger()


@asynccontextmanager
async def create_memory_service(
    settings: Optional[Settings] = None,
    summarizer: Optional[Summarizer] = None,
    setup_logging: bool = True,
) -> AsyncIterator[MemoryService]:
    """Build a MemoryService on SQLite and tear it down on exit.

    Args:
        settings: Configuration; read from the environment when omitted.
        summarizer: Overrides the summarizer chosen by settings.
        setup_logging: Configure structlog from settings.
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(settings.log_level, settings.log_json)

    db = DatabaseManager(settings.database_url)
    await db.initialize()
    try:
        store = MemoryStore(SQLiteKeyValueStore(db))
        service = MemoryService.from_settings(
            store, summarizer or create_summarizer(settings), settings
        )
        await service.initialize()
        logger.info(
            "Chat memory started",
            database=db.database_path,
            summarizer=settings.summarizer_provider,
        )
        try:
            yield service
        finally:
            await service.close()
    finally:
        await db.close()
