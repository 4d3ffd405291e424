"""In-memory inverted index from tag/key term to chat ids."""

from collections import defaultdict
from typing import Dict, Iterable, Set

from .models import ChatMemory


class TermIndex:
    """Cache over ``ChatMemory.tags`` and ``ChatMemory.key_terms``.

    Never authoritative: it can be rebuilt from the chat records at any
    time and is discarded with the process.
    """

    def __init__(self) -> None:
        self._postings: Dict[str, Set[str]] = defaultdict(set)
        self._terms_by_chat: Dict[str, Set[str]] = {}

    def rebuild(self, memories: Iterable[ChatMemory]) -> None:
        self._postings.clear()
        self._terms_by_chat.clear()
        for memory in memories:
            self.update(memory)

    def update(self, memory: ChatMemory) -> None:
        """Replace the indexed terms of one chat."""
        self.remove(memory.id)
        terms = {term.lower() for term in memory.indexed_terms if term}
        self._terms_by_chat[memory.id] = terms
        for term in terms:
            self._postings[term].add(memory.id)

    def remove(self, chat_id: str) -> None:
        for term in self._terms_by_chat.pop(chat_id, set()):
            posting = self._postings.get(term)
            if posting is None:
                continue
            posting.discard(chat_id)
            if not posting:
                del self._postings[term]

    def match_counts(self, terms: Iterable[str]) -> Dict[str, int]:
        """Map chat id -> number of distinct query terms it is indexed under."""
        counts: Dict[str, int] = defaultdict(int)
        for term in {t.lower() for t in terms if t}:
            for chat_id in self._postings.get(term, ()):
                counts[chat_id] += 1
        return dict(counts)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._terms_by_chat

    def __len__(self) -> int:
        return len(self._terms_by_chat)
