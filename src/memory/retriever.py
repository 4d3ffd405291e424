"""Cross-conversation context retrieval."""

from typing import Any, List, Optional

import structlog

from .models import ChatMemory, ContextSnippet
from .store import MemoryStore
from .terms import MIN_TERM_LENGTH, extract_key_terms

logger = structlog.get_logger()

ELLIPSIS = "..."
SNIPPET_TITLE_CHARS = 100
SNIPPET_TAG_CHARS = 30


def truncate(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` characters, ending in an ellipsis if cut."""
    text = text.strip()
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return text[:limit]
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


class ContextRetriever:
    """Ranks other conversations against the message being sent.

    Score = |seed ∩ key_terms| + tag_weight * |seed ∩ tags|, where the
    seed is the top key terms of the current message only.
    """

    def __init__(
        self,
        store: MemoryStore,
        top_k: int = 3,
        tag_weight: int = 2,
        seed_terms: int = 5,
        snippet_chars: int = 280,
        max_tags: int = 5,
        min_term_length: int = MIN_TERM_LENGTH,
    ) -> None:
        self._store = store
        self.top_k = top_k
        self.tag_weight = tag_weight
        self.seed_terms = seed_terms
        self.snippet_chars = snippet_chars
        self.max_tags = max_tags
        self.min_term_length = min_term_length

    @classmethod
    def from_settings(cls, store: MemoryStore, settings: Any) -> "ContextRetriever":
        return cls(
            store,
            top_k=settings.context_top_k,
            tag_weight=settings.context_tag_weight,
            seed_terms=settings.query_terms_limit,
            snippet_chars=settings.context_snippet_chars,
            max_tags=settings.context_max_tags,
            min_term_length=settings.min_term_length,
        )

    async def find_relevant_context(
        self, active_chat_id: Optional[str], current_message: str
    ) -> List[str]:
        """Injectable context strings, best match first, at most ``top_k``."""
        snippets = await self.find_relevant_snippets(active_chat_id, current_message)
        return [snippet.text for snippet in snippets]

    async def find_relevant_snippets(
        self, active_chat_id: Optional[str], current_message: str
    ) -> List[ContextSnippet]:
        seed = set(
            extract_key_terms(current_message, self.seed_terms, self.min_term_length)
        )
        if not seed:
            return []

        candidates = [
            memory
            for memory in await self._store.get_all()
            if memory.id != active_chat_id
        ]
        if not candidates:
            return []

        scored = []
        for memory in candidates:
            score = self.score(seed, memory)
            if score > 0:
                scored.append((score, memory))

        # Stable sorts: id, then recency, then score.
        scored.sort(key=lambda item: item[1].id)
        scored.sort(key=lambda item: item[1].last_message_at, reverse=True)
        scored.sort(key=lambda item: item[0], reverse=True)

        snippets = [
            ContextSnippet(
                chat_id=memory.id,
                title=memory.title,
                score=score,
                text=self.build_snippet(memory),
            )
            for score, memory in scored[: self.top_k]
        ]
        logger.debug(
            "Context retrieval",
            active_chat_id=active_chat_id,
            seed=sorted(seed),
            candidates=len(candidates),
            matched=len(scored),
            returned=len(snippets),
        )
        return snippets

    def score(self, seed: set[str], memory: ChatMemory) -> int:
        key_terms = {term.lower() for term in memory.key_terms}
        tags = {tag.lower() for tag in memory.tags}
        return len(seed & key_terms) + self.tag_weight * len(seed & tags)

    def build_snippet(self, memory: ChatMemory) -> str:
        title = truncate(memory.title, SNIPPET_TITLE_CHARS)
        head = f'Previous conversation "{title}"'
        parts = []
        if memory.summary.strip():
            parts.append(truncate(memory.summary, self.snippet_chars))
        tags = [truncate(tag, SNIPPET_TAG_CHARS) for tag in memory.tags[: self.max_tags]]
        if tags:
            parts.append(f"Tags: {', '.join(tags)}")
        if not parts:
            return head
        return f"{head}: {' | '.join(parts)}"
