"""Memory service: the single entry point for chat memory.

Owns the current-chat pointer, serializes appends per chat and keeps
metadata analysis off the append path.
"""

import asyncio
import json
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Set

import structlog
from pydantic import ValidationError

from src.exceptions import ChatNotFoundError, ChatValidationError

from .models import (
    ChatBio,
    ChatMemory,
    ChatStats,
    ContextSnippet,
    Message,
    new_id,
    utc_now,
)
from .retriever import ContextRetriever
from .scheduler import DEFAULT_TIMEOUT_SECONDS, AnalysisResult, AnalysisScheduler
from .store import MemoryStore
from .summarizer import Summarizer, fallback_title
from .terms import extract_key_terms

logger = structlog.get_logger()

EXPORT_FORMAT = "chat-memory"
EXPORT_VERSION = 1


class MemoryService:
    """Chat lifecycle, message append, analysis, search and import/export."""

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Summarizer,
        scheduler: Optional[AnalysisScheduler] = None,
        retriever: Optional[ContextRetriever] = None,
        title_max_length: int = 100,
        query_terms_limit: int = 5,
        stats_top_tags: int = 10,
        analysis_in_background: bool = True,
        title_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._summarizer = summarizer
        self._scheduler = scheduler or AnalysisScheduler(store, summarizer)
        self._retriever = retriever or ContextRetriever(store)
        self.title_max_length = title_max_length
        self.query_terms_limit = query_terms_limit
        self.stats_top_tags = stats_top_tags
        self.analysis_in_background = analysis_in_background
        self.title_timeout = title_timeout

        self._current_chat_id: Optional[str] = None
        self._create_lock = asyncio.Lock()
        self._append_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._analysis_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: Dict[str, Set["asyncio.Task[Optional[AnalysisResult]]"]] = (
            defaultdict(set)
        )

    @classmethod
    def from_settings(
        cls, store: MemoryStore, summarizer: Summarizer, settings: Any
    ) -> "MemoryService":
        return cls(
            store,
            summarizer,
            scheduler=AnalysisScheduler.from_settings(store, summarizer, settings),
            retriever=ContextRetriever.from_settings(store, settings),
            title_max_length=settings.title_max_length,
            query_terms_limit=settings.query_terms_limit,
            stats_top_tags=settings.stats_top_tags,
            analysis_in_background=settings.analysis_in_background,
            title_timeout=settings.summarizer_timeout_seconds,
        )

    @property
    def store(self) -> MemoryStore:
        return self._store

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Warm the term index from persisted chats."""
        await self._store.rebuild_index()
        chats = await self._store.get_all()
        logger.info("Memory service initialized", chats=len(chats))

    async def close(self) -> None:
        """Wait for in-flight analysis passes."""
        await self.wait_for_analysis()
        logger.info("Memory service closed")

    # --- Current chat ---

    def get_current_chat_id(self) -> Optional[str]:
        return self._current_chat_id

    async def create_new_chat(self, first_message_text: str) -> str:
        """Create an empty chat titled from its first message and make it current."""
        title = await self._derive_title(first_message_text)
        memory = ChatMemory(id=new_id(), title=title)
        await self._store.create(memory)
        self._current_chat_id = memory.id

        logger.info("Created new chat", chat_id=memory.id, title=title)
        return memory.id

    async def load_chat(self, chat_id: str) -> Optional[ChatMemory]:
        """Load a chat and make it current; None for unknown ids."""
        memory = await self._store.get(chat_id)
        if memory is not None:
            self._current_chat_id = chat_id
        return memory

    async def get_all_chats(self) -> List[ChatMemory]:
        return await self._store.get_all()

    async def delete_chat(self, chat_id: str) -> None:
        """Delete a chat; clears the current pointer if it was current."""
        await self._store.delete(chat_id)
        self._append_locks.pop(chat_id, None)
        if self._current_chat_id == chat_id:
            self._current_chat_id = None
            logger.info("Current chat deleted", chat_id=chat_id)

    async def rename_chat(self, chat_id: str, new_title: str) -> bool:
        """Rename a chat.

        Returns False for unknown ids.

        Raises:
            ChatValidationError: If the title is empty or too long.
        """
        title = self._validate_title(new_title)
        renamed = await self._store.rename_title(chat_id, title)
        if renamed:
            logger.info("Renamed chat", chat_id=chat_id, title=title)
        return renamed

    # --- Messages ---

    async def add_message(self, message: Message) -> Message:
        """Append a message to the current chat, creating one if needed.

        Analysis problems never fail this call; storage errors do.
        """
        chat_id = await self._current_or_new_chat(message)

        async with self._append_locks[chat_id]:
            try:
                stored = await self._store.append_message(chat_id, message)
            except ChatNotFoundError:
                logger.warning("Current chat vanished, starting a new one", chat_id=chat_id)
                if self._current_chat_id == chat_id:
                    self._current_chat_id = None
                return await self.add_message(message)
            message_count = await self._store.count_messages(chat_id)

        if self._scheduler.should_analyze(message_count, stored.role):
            await self._schedule_analysis(chat_id)
        return stored

    async def save_message(self, message: Message) -> Message:
        return await self.add_message(message)

    async def _current_or_new_chat(self, message: Message) -> str:
        """Current chat id, creating the chat once for concurrent first messages."""
        chat_id = self._current_chat_id
        if chat_id is not None:
            return chat_id
        async with self._create_lock:
            chat_id = self._current_chat_id
            if chat_id is None:
                chat_id = await self.create_new_chat(message.text or message.display_text)
            return chat_id

    async def get_messages(self, chat_id: str) -> List[Message]:
        return await self._store.get_messages(chat_id)

    # --- Analysis ---

    async def wait_for_analysis(self, chat_id: Optional[str] = None) -> None:
        """Wait until queued analysis passes (for one chat or all) finish."""
        while True:
            if chat_id is not None:
                tasks = set(self._pending.get(chat_id, ()))
            else:
                tasks = {t for group in self._pending.values() for t in group}
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _schedule_analysis(self, chat_id: str) -> None:
        if not self.analysis_in_background:
            await self._run_analysis(chat_id)
            return

        task = asyncio.create_task(
            self._run_analysis(chat_id), name=f"analysis-{chat_id}"
        )
        self._pending[chat_id].add(task)
        task.add_done_callback(lambda t: self._forget_task(chat_id, t))

    def _forget_task(self, chat_id: str, task: "asyncio.Task[Any]") -> None:
        group = self._pending.get(chat_id)
        if group is None:
            return
        group.discard(task)
        if not group:
            del self._pending[chat_id]
            self._analysis_locks.pop(chat_id, None)

    async def _run_analysis(self, chat_id: str) -> Optional[AnalysisResult]:
        # Passes for one chat run one at a time, in scheduling order.
        async with self._analysis_locks[chat_id]:
            try:
                return await self._scheduler.analyze(chat_id)
            except Exception:
                logger.exception("Analysis pass crashed", chat_id=chat_id)
                return None

    # --- Retrieval and search ---

    async def find_relevant_context(self, text: str) -> List[str]:
        """Context snippets from other chats for a message in the current one."""
        if self._current_chat_id is None:
            return []
        return await self._retriever.find_relevant_context(self._current_chat_id, text)

    async def find_relevant_snippets(self, text: str) -> List[ContextSnippet]:
        if self._current_chat_id is None:
            return []
        return await self._retriever.find_relevant_snippets(self._current_chat_id, text)

    async def search_chats(self, query: str) -> List[ChatMemory]:
        terms = extract_key_terms(query, self.query_terms_limit)
        return await self._store.search_by_terms(terms)

    # --- Import / export ---

    async def export_chat(self, chat_id: str) -> str:
        """Serialize a chat with its messages as JSON.

        Raises:
            ChatNotFoundError: If the chat does not exist.
        """
        memory = await self._store.get(chat_id)
        if memory is None:
            raise ChatNotFoundError(chat_id)
        payload = {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "chat": memory.model_dump(mode="json"),
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)

    async def import_chat(self, serialized: str) -> str:
        """Store an exported chat under a fresh id and fresh timestamps.

        Raises:
            ChatValidationError: If the data cannot be parsed or is
                missing required fields. Nothing is written in that case.
        """
        try:
            payload = json.loads(serialized)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ChatValidationError(f"Invalid chat data format: {exc}") from exc

        if not isinstance(payload, dict):
            raise ChatValidationError("Invalid chat data format: expected an object")
        if "format" in payload:
            if payload["format"] != EXPORT_FORMAT or not isinstance(
                payload.get("chat"), dict
            ):
                raise ChatValidationError("Invalid chat data format: unknown envelope")
            data = payload["chat"]
        else:
            data = payload

        try:
            imported = ChatMemory.model_validate(data)
        except ValidationError as exc:
            raise ChatValidationError(f"Invalid chat data format: {exc}") from exc

        title = self._validate_title(imported.title)
        chat_id = new_id()
        now = utc_now()
        messages = [
            msg.model_copy(update={"id": new_id(), "chat_id": chat_id})
            for msg in imported.messages
        ]
        memory = imported.model_copy(
            update={
                "id": chat_id,
                "title": title,
                "messages": messages,
                "created_at": now,
                "updated_at": now,
                "last_message_at": now,
                "message_count": len(messages),
                "analyzed_message_count": min(
                    imported.analyzed_message_count, len(messages)
                ),
            }
        )
        await self._store.create(memory)

        logger.info("Imported chat", chat_id=chat_id, messages=len(messages))
        return chat_id

    # --- Stats and bio ---

    async def get_chat_stats(self) -> ChatStats:
        chats = await self._store.get_all()
        tag_counts: Counter[str] = Counter()
        for chat in chats:
            tag_counts.update(chat.tags)

        return ChatStats(
            total_chats=len(chats),
            total_messages=sum(chat.message_count for chat in chats),
            most_used_tags=[
                tag for tag, _ in tag_counts.most_common(self.stats_top_tags)
            ],
        )

    async def get_bio(self) -> Optional[ChatBio]:
        return await self._store.get_bio()

    async def save_bio(self, name: str, content: str) -> ChatBio:
        """Replace the bio, keeping its id and creation time."""
        current = await self._store.get_bio()
        bio = ChatBio(
            id=current.id if current else new_id(),
            name=name,
            content=content,
            created_at=current.created_at if current else utc_now(),
            updated_at=utc_now(),
        )
        await self._store.save_bio(bio)
        return bio

    # --- Helpers ---

    def _validate_title(self, title: str) -> str:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ChatValidationError("Title must not be empty")
        if len(cleaned) > self.title_max_length:
            raise ChatValidationError(
                f"Title longer than {self.title_max_length} characters"
            )
        return cleaned

    async def _derive_title(self, text: str) -> str:
        try:
            title = await asyncio.wait_for(
                self._summarizer.generate_title(text), timeout=self.title_timeout
            )
            title = title.strip()
        except asyncio.TimeoutError:
            logger.warning(
                "Title generation timed out, using opening words",
                timeout=self.title_timeout,
            )
            title = ""
        except Exception as exc:
            logger.warning("Title generation failed, using opening words", error=str(exc))
            title = ""
        if not title:
            title = fallback_title(text)
        return title[: self.title_max_length]
