"""Summarizer capability: titles, summaries and tags for conversations."""

from typing import Any, Optional, Protocol, Sequence

import structlog

from src.exceptions import AnalysisError
from src.llm.chat_provider import ChatProvider

from .models import Message, MessageRole
from .terms import extract_key_terms_from_messages

logger = structlog.get_logger()

TITLE_MAX_CHARS = 50
TITLE_MAX_WORDS = 6
SUMMARY_FALLBACK_CHARS = 100
SUMMARY_WINDOW = 10
TAGS_WINDOW = 6
MAX_TAGS = 5
MAX_TAG_LENGTH = 20

TITLE_SYSTEM = """\
You are a helpful assistant that creates concise, descriptive titles for \
conversations. Create a short title (3-6 words) that captures the main topic. \
Respond with only the title, no other text."""

SUMMARY_SYSTEM = """\
You are a helpful assistant that creates concise summaries of conversations. \
Create a brief, informative summary (1-2 sentences) that captures the main \
topics and outcomes of the conversation."""

TAGS_SYSTEM = """\
You are a helpful assistant that creates relevant tags for conversations. \
Generate 3-5 concise, lowercase tags that capture the main topics. Respond \
with only the tags separated by commas, no other text."""


class Summarizer(Protocol):
    """Natural-language oracle for conversation metadata."""

    async def generate_title(self, text: str) -> str:
        ...

    async def generate_summary(self, messages: Sequence[Message]) -> str:
        ...

    async def generate_tags(self, messages: Sequence[Message]) -> set[str]:
        ...


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def fallback_title(text: str) -> str:
    """First few words of the opening message."""
    words = " ".join(text.split()[:TITLE_MAX_WORDS])[:TITLE_MAX_CHARS]
    if not words:
        return "New chat"
    return words + ("..." if len(text.strip()) > TITLE_MAX_CHARS else "")


def format_transcript(messages: Sequence[Message], window: int) -> str:
    """Render the last ``window`` messages as ``Role: text`` lines."""
    lines = []
    for msg in messages[-window:]:
        role = "User" if msg.role == MessageRole.USER else "Assistant"
        lines.append(f"{role}: {msg.display_text}")
    return "\n".join(lines)


def parse_tags(raw: str) -> set[str]:
    """Comma-separated model output -> normalized tag set."""
    tags: list[str] = []
    for part in raw.split(","):
        tag = part.strip().strip(".#\"'").lower()
        if 0 < len(tag) < MAX_TAG_LENGTH and tag not in tags:
            tags.append(tag)
    return set(tags[:MAX_TAGS])


class HeuristicSummarizer:
    """Offline summarizer built from simple text heuristics."""

    async def generate_title(self, text: str) -> str:
        return fallback_title(text)

    async def generate_summary(self, messages: Sequence[Message]) -> str:
        if not messages:
            return ""
        for msg in messages:
            if msg.role == MessageRole.USER and msg.text.strip():
                return _truncate(msg.text.strip(), SUMMARY_FALLBACK_CHARS)
        return _truncate(messages[0].display_text.strip(), SUMMARY_FALLBACK_CHARS)

    async def generate_tags(self, messages: Sequence[Message]) -> set[str]:
        if not messages:
            return set()
        return set(extract_key_terms_from_messages(messages, MAX_TAGS))


class LLMSummarizer:
    """Summarizer backed by a cheap chat model."""

    def __init__(self, chat_provider: Any) -> None:
        self._provider = chat_provider

    async def generate_title(self, text: str) -> str:
        """Short title for a chat; falls back to the opening words on error."""
        excerpt = _truncate(text, 200)
        try:
            raw = await self._provider.complete(
                system=TITLE_SYSTEM,
                prompt=(
                    "Create a title for a conversation that starts with: "
                    f'"{excerpt}"'
                ),
                max_tokens=30,
            )
        except Exception as exc:
            logger.warning("Title generation failed", error=str(exc))
            return fallback_title(text)

        title = raw.strip().strip("\"'")[:TITLE_MAX_CHARS]
        return title or fallback_title(text)

    async def generate_summary(self, messages: Sequence[Message]) -> str:
        if not messages:
            return ""
        transcript = format_transcript(messages, SUMMARY_WINDOW)
        try:
            raw = await self._provider.complete(
                system=SUMMARY_SYSTEM,
                prompt=f"Please summarize this conversation:\n\n{transcript}",
                max_tokens=200,
            )
        except Exception as exc:
            raise AnalysisError(f"Summary generation failed: {exc}") from exc
        return raw.strip()

    async def generate_tags(self, messages: Sequence[Message]) -> set[str]:
        if not messages:
            return set()
        transcript = format_transcript(messages, TAGS_WINDOW)
        try:
            raw = await self._provider.complete(
                system=TAGS_SYSTEM,
                prompt=f"Generate tags for this conversation:\n\n{transcript}",
                max_tokens=60,
            )
        except Exception as exc:
            raise AnalysisError(f"Tag generation failed: {exc}") from exc
        return parse_tags(raw)


def create_summarizer(settings: Any) -> Summarizer:
    """Build the summarizer selected by ``settings.summarizer_provider``.

    Raises:
        ValueError: For unknown providers or a missing API key.
    """
    provider_name = getattr(settings, "summarizer_provider", "heuristic")

    if provider_name == "heuristic":
        return HeuristicSummarizer()

    if provider_name == "openai":
        api_key: Optional[str] = settings.openai_api_key_str
        if not api_key:
            raise ValueError("summarizer_provider 'openai' requires openai_api_key")
        return LLMSummarizer(
            ChatProvider(
                model=settings.summarizer_model,
                api_key=api_key,
                base_url=settings.summarizer_base_url,
            )
        )

    raise ValueError(
        f"Unknown summarizer provider: '{provider_name}'. "
        f"Supported providers: 'heuristic', 'openai'"
    )
