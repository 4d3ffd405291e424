"""LLM provider access used for chat analysis."""

from .chat_provider import ChatProvider, ChatResponse

__all__ = ["ChatProvider", "ChatResponse"]
