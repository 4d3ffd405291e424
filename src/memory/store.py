"""Memory store: chat records, messages and the bio over a key-value store.

Layout:
    memories/<chat_id>              chat record (without messages)
    messages/<chat_id>/<seq>        one message, seq zero-padded for order
    bio/current                     singleton bio
"""

import asyncio
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

import structlog
from pydantic import ValidationError

from src.exceptions import ChatNotFoundError, StorageError
from src.storage.kv import KeyValueStore

from .index import TermIndex
from .models import ChatBio, ChatMemory, Message, utc_now

logger = structlog.get_logger()

MEMORY_PREFIX = "memories/"
MESSAGE_PREFIX = "messages/"
BIO_KEY = "bio/current"
SEQ_WIDTH = 10


def memory_key(chat_id: str) -> str:
    return f"{MEMORY_PREFIX}{chat_id}"


def messages_prefix(chat_id: str) -> str:
    return f"{MESSAGE_PREFIX}{chat_id}/"


def message_key(chat_id: str, seq: int) -> str:
    return f"{messages_prefix(chat_id)}{seq:0{SEQ_WIDTH}d}"


class MemoryStore:
    """CRUD and term search over persisted conversations."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._index = TermIndex()
        self._index_ready = False
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- Chats ---

    async def create(self, memory: ChatMemory) -> ChatMemory:
        """Persist a new chat, including any messages it already carries."""
        async with self._locks[memory.id]:
            messages = [
                msg.model_copy(update={"chat_id": memory.id})
                for msg in memory.messages
            ]
            record = memory.model_copy(
                update={"messages": [], "message_count": len(messages)}
            )
            written: List[str] = []
            try:
                for seq, msg in enumerate(messages):
                    key = message_key(memory.id, seq)
                    await self._kv.put(key, msg.model_dump_json())
                    written.append(key)
                await self._kv.put(memory_key(memory.id), record.record_json())
            except StorageError:
                await self._discard(written)
                raise

            if self._index_ready:
                self._index.update(record)

        logger.info(
            "Created chat memory", chat_id=memory.id, messages=len(messages)
        )
        return record.model_copy(update={"messages": messages})

    async def get(
        self, chat_id: str, include_messages: bool = True
    ) -> Optional[ChatMemory]:
        """Return the chat, or None for unknown ids."""
        record = await self._get_record(chat_id)
        if record is None or not include_messages:
            return record
        record.messages = await self.get_messages(chat_id)
        return record

    async def get_all(self, include_messages: bool = False) -> List[ChatMemory]:
        """All chats, most recently active first (ties by id)."""
        memories = [
            self._parse_record(key, value)
            for key, value in await self._kv.scan(MEMORY_PREFIX)
        ]

        memories.sort(key=lambda m: m.id)
        memories.sort(key=lambda m: m.last_message_at, reverse=True)

        if include_messages:
            for memory in memories:
                memory.messages = await self.get_messages(memory.id)
        return memories

    async def delete(self, chat_id: str) -> bool:
        """Delete a chat and its messages. Unknown ids are a no-op."""
        async with self._locks[chat_id]:
            existed = await self._kv.get(memory_key(chat_id)) is not None
            for key, _ in await self._kv.scan(messages_prefix(chat_id)):
                await self._kv.delete(key)
            await self._kv.delete(memory_key(chat_id))
            self._index.remove(chat_id)
        self._locks.pop(chat_id, None)

        if existed:
            logger.info("Deleted chat memory", chat_id=chat_id)
        return existed

    async def rename_title(self, chat_id: str, title: str) -> bool:
        """Set a new title; returns False when the chat does not exist."""
        async with self._locks[chat_id]:
            record = await self._get_record(chat_id)
            if record is None:
                return False
            record.title = title
            record.updated_at = utc_now()
            await self._kv.put(memory_key(chat_id), record.record_json())
        return True

    # --- Messages ---

    async def append_message(self, chat_id: str, message: Message) -> Message:
        """Append a message at the end of the chat.

        The message is written before the chat record, so it is durable
        even if the record update fails.

        Raises:
            ChatNotFoundError: If the chat does not exist.
        """
        async with self._locks[chat_id]:
            record = await self._get_record(chat_id)
            if record is None:
                raise ChatNotFoundError(chat_id)

            stored = message.model_copy(update={"chat_id": chat_id})
            seq = record.message_count
            await self._kv.put(message_key(chat_id, seq), stored.model_dump_json())

            now = utc_now()
            record.message_count = seq + 1
            record.updated_at = now
            record.last_message_at = now
            await self._kv.put(memory_key(chat_id), record.record_json())

        logger.debug(
            "Appended message",
            chat_id=chat_id,
            message_id=stored.id,
            seq=seq,
            role=stored.role.value,
        )
        return stored

    async def get_messages(self, chat_id: str) -> List[Message]:
        """Messages in append order; empty for unknown chats."""
        messages = []
        for key, value in await self._kv.scan(messages_prefix(chat_id)):
            try:
                messages.append(Message.model_validate_json(value))
            except ValidationError as exc:
                raise StorageError(f"Corrupt message record {key}: {exc}") from exc
        return messages

    async def count_messages(self, chat_id: str) -> int:
        record = await self._get_record(chat_id)
        return record.message_count if record else 0

    # --- Analysis ---

    async def apply_analysis(
        self,
        chat_id: str,
        summary: Optional[str],
        tags: Optional[Iterable[str]],
        key_terms: Iterable[str],
        analyzed_message_count: int,
    ) -> bool:
        """Merge derived metadata into the chat as one write.

        ``None`` for summary or tags keeps the stored value. Returns False,
        writing nothing, if the chat was deleted in the meantime.
        """
        async with self._locks[chat_id]:
            record = await self._get_record(chat_id)
            if record is None:
                logger.info("Discarding analysis for deleted chat", chat_id=chat_id)
                return False

            if summary is not None:
                record.summary = summary
            if tags is not None:
                record.tags = list(dict.fromkeys(tags))
            record.key_terms = list(key_terms)
            record.analyzed_message_count = analyzed_message_count
            record.updated_at = utc_now()
            await self._kv.put(memory_key(chat_id), record.record_json())

            if self._index_ready:
                self._index.update(record)
        return True

    # --- Search ---

    async def search_by_terms(self, terms: Iterable[str]) -> List[ChatMemory]:
        """Chats whose tags or key terms intersect ``terms``.

        Ranked by intersection size, then most recently active first.
        """
        wanted = {term.lower() for term in terms if term}
        if not wanted:
            return []

        await self._ensure_index()
        counts = self._index.match_counts(wanted)

        matches = []
        for chat_id, count in counts.items():
            record = await self._get_record(chat_id)
            if record is not None:
                matches.append((count, record))

        matches.sort(key=lambda item: item[1].id)
        matches.sort(key=lambda item: (item[0], item[1].last_message_at), reverse=True)
        return [record for _, record in matches]

    async def rebuild_index(self) -> None:
        self._index.rebuild(await self.get_all())
        self._index_ready = True
        logger.debug("Rebuilt term index", chats=len(self._index))

    async def _ensure_index(self) -> None:
        if not self._index_ready:
            await self.rebuild_index()

    # --- Bio ---

    async def get_bio(self) -> Optional[ChatBio]:
        value = await self._kv.get(BIO_KEY)
        if value is None:
            return None
        try:
            return ChatBio.model_validate_json(value)
        except ValidationError as exc:
            raise StorageError(f"Corrupt bio record: {exc}") from exc

    async def save_bio(self, bio: ChatBio) -> None:
        """Replace the single bio record."""
        await self._kv.put(BIO_KEY, bio.model_dump_json())
        logger.info("Saved bio", bio_id=bio.id)

    # --- Helpers ---

    async def _discard(self, keys: List[str]) -> None:
        """Best-effort removal of message keys left by a failed create."""
        for key in keys:
            try:
                await self._kv.delete(key)
            except StorageError as exc:
                logger.error("Failed to remove orphan message", key=key, error=str(exc))

    async def _get_record(self, chat_id: str) -> Optional[ChatMemory]:
        value = await self._kv.get(memory_key(chat_id))
        if value is None:
            return None
        return self._parse_record(memory_key(chat_id), value)

    @staticmethod
    def _parse_record(key: str, value: str) -> ChatMemory:
        try:
            return ChatMemory.model_validate_json(value)
        except ValidationError as exc:
            raise StorageError(f"Corrupt chat record {key}: {exc}") from exc
