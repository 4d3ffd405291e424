"""Builders shared by the test suite."""

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

from src.memory.models import ChatMemory, Message, MessageRole

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_message(
    content: str = "hello world",
    role: MessageRole = MessageRole.USER,
    **overrides,
) -> Message:
    """Build a Message with sensible defaults."""
    return Message(role=role, content=content, **overrides)


def make_chat(
    chat_id: str,
    title: str = "A chat",
    tags: Optional[list] = None,
    key_terms: Optional[list] = None,
    summary: str = "",
    minutes: int = 0,
) -> ChatMemory:
    """Build a ChatMemory whose activity time is BASE_TIME + minutes."""
    when = BASE_TIME + timedelta(minutes=minutes)
    return ChatMemory(
        id=chat_id,
        title=title,
        tags=tags or [],
        key_terms=key_terms or [],
        summary=summary,
        created_at=when,
        updated_at=when,
        last_message_at=when,
    )


def make_summarizer(
    title: str = "Generated title",
    summary: str = "Generated summary",
    tags: Optional[set] = None,
) -> MagicMock:
    """Summarizer double with AsyncMock methods."""
    summarizer = MagicMock()
    summarizer.generate_title = AsyncMock(return_value=title)
    summarizer.generate_summary = AsyncMock(return_value=summary)
    summarizer.generate_tags = AsyncMock(
        return_value=tags if tags is not None else {"general"}
    )
    return summarizer
