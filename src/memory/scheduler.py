"""Analysis scheduling: when to refresh summary/tags/key terms, and how.

Summarizer calls are slow and may fail. The policy keeps them off most
assistant turns, and a failed or timed-out call leaves the previous
metadata in place.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import structlog

from src.exceptions import StorageError

from .models import MessageRole
from .store import MemoryStore
from .summarizer import Summarizer
from .terms import MIN_TERM_LENGTH, extract_key_terms_from_messages

logger = structlog.get_logger()

DEFAULT_KEY_TERMS_LIMIT = 15
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class AnalysisPolicy:
    """Trigger rule evaluated after each appended message.

    Fires while the chat is short, every ``period`` messages, and on
    every user turn.
    """

    min_messages: int = 5
    period: int = 3
    on_user_turn: bool = True

    def should_analyze(self, message_count: int, role: MessageRole) -> bool:
        if message_count <= 0:
            return False
        if message_count <= self.min_messages:
            return True
        if self.period > 0 and message_count % self.period == 0:
            return True
        return self.on_user_turn and role == MessageRole.USER

    def __call__(self, message_count: int, role: MessageRole) -> bool:
        return self.should_analyze(message_count, role)

    @classmethod
    def from_settings(cls, settings: Any) -> "AnalysisPolicy":
        return cls(
            min_messages=settings.analysis_min_messages,
            period=settings.analysis_period,
            on_user_turn=settings.analysis_on_user_turn,
        )


PolicyFn = Callable[[int, MessageRole], bool]


@dataclass
class AnalysisResult:
    """Outcome of one analysis pass."""

    chat_id: str
    message_count: int
    applied: bool
    summary_ok: bool = False
    tags_ok: bool = False
    error: Optional[str] = None


class AnalysisScheduler:
    """Decides on and runs metadata refreshes for a chat."""

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Summarizer,
        policy: Union[AnalysisPolicy, PolicyFn, None] = None,
        key_terms_limit: int = DEFAULT_KEY_TERMS_LIMIT,
        min_term_length: int = MIN_TERM_LENGTH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._policy: PolicyFn = policy or AnalysisPolicy()
        self._key_terms_limit = key_terms_limit
        self._min_term_length = min_term_length
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls, store: MemoryStore, summarizer: Summarizer, settings: Any
    ) -> "AnalysisScheduler":
        return cls(
            store,
            summarizer,
            policy=AnalysisPolicy.from_settings(settings),
            key_terms_limit=settings.key_terms_limit,
            min_term_length=settings.min_term_length,
            timeout=settings.summarizer_timeout_seconds,
        )

    def should_analyze(self, message_count: int, role: MessageRole) -> bool:
        return bool(self._policy(message_count, role))

    async def analyze(self, chat_id: str) -> AnalysisResult:
        """Recompute summary, tags and key terms from the current messages.

        Never raises for summarizer or storage trouble; the outcome is
        reported in the returned AnalysisResult.
        """
        try:
            messages = await self._store.get_messages(chat_id)
        except StorageError as exc:
            logger.error("Analysis could not load messages", chat_id=chat_id, error=str(exc))
            return AnalysisResult(chat_id, 0, applied=False, error=str(exc))

        if not messages:
            return AnalysisResult(chat_id, 0, applied=False)

        summary, tags = await asyncio.gather(
            self._call("summary", chat_id, self._summarizer.generate_summary(messages)),
            self._call("tags", chat_id, self._summarizer.generate_tags(messages)),
        )
        key_terms = extract_key_terms_from_messages(
            messages, self._key_terms_limit, self._min_term_length
        )

        result = AnalysisResult(
            chat_id,
            len(messages),
            applied=False,
            summary_ok=summary is not None,
            tags_ok=tags is not None,
        )
        try:
            result.applied = await self._store.apply_analysis(
                chat_id,
                summary=summary,
                tags=sorted(tags) if tags is not None else None,
                key_terms=key_terms,
                analyzed_message_count=len(messages),
            )
        except StorageError as exc:
            logger.error("Failed to persist analysis", chat_id=chat_id, error=str(exc))
            result.error = str(exc)
            return result

        logger.debug(
            "Analysis pass finished",
            chat_id=chat_id,
            message_count=len(messages),
            applied=result.applied,
            summary_ok=result.summary_ok,
            tags_ok=result.tags_ok,
        )
        return result

    async def run_if_needed(
        self, chat_id: str, message_count: int, role: MessageRole
    ) -> Optional[AnalysisResult]:
        if not self.should_analyze(message_count, role):
            return None
        return await self.analyze(chat_id)

    async def _call(self, what: str, chat_id: str, coro: Any) -> Any:
        """Await one summarizer call; None on failure or timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Summarizer timed out, keeping previous value",
                what=what,
                chat_id=chat_id,
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning(
                "Summarizer failed, keeping previous value",
                what=what,
                chat_id=chat_id,
                error=str(exc),
            )
        return None

