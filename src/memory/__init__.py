"""Conversational memory: chat storage, metadata analysis and context retrieval."""

from src.exceptions import (
    AnalysisError,
    ChatMemoryError,
    ChatNotFoundError,
    ChatValidationError,
    StorageError,
)

from .models import ChatBio, ChatMemory, ChatStats, ContentSegment, Message, MessageRole
from .retriever import ContextRetriever
from .scheduler import AnalysisPolicy, AnalysisScheduler
from .service import MemoryService
from .store import MemoryStore
from .summarizer import HeuristicSummarizer, LLMSummarizer, Summarizer, create_summarizer
from .terms import extract_key_terms

__all__ = [
    "AnalysisError",
    "AnalysisPolicy",
    "AnalysisScheduler",
    "ChatBio",
    "ChatMemory",
    "ChatMemoryError",
    "ChatNotFoundError",
    "ChatStats",
    "ChatValidationError",
    "ContentSegment",
    "ContextRetriever",
    "HeuristicSummarizer",
    "LLMSummarizer",
    "MemoryService",
    "MemoryStore",
    "Message",
    "MessageRole",
    "StorageError",
    "Summarizer",
    "create_summarizer",
    "extract_key_terms",
]
