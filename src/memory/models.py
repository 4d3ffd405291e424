"""Pydantic models for chat memory records."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


class ContentSegment(BaseModel):
    """One typed part of a multimodal message."""

    type: str  # text, image_url, tool_call, tool_result
    text: Optional[str] = None
    image_url: Optional[str] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    output: Optional[str] = None

    @property
    def searchable_text(self) -> str:
        """Text that takes part in term extraction."""
        if self.type == "text":
            return self.text or ""
        if self.type == "tool_result":
            return self.output or self.text or ""
        return ""

    @property
    def display_text(self) -> str:
        """Text shown in transcripts handed to the summarizer."""
        if self.type == "image_url":
            return "[Image]"
        if self.type == "tool_call":
            return f"[Tool call: {self.tool_name or 'unknown'}]"
        return self.searchable_text


class Message(BaseModel):
    """A single chat message."""

    id: str = Field(default_factory=new_id)
    chat_id: Optional[str] = None
    role: MessageRole
    content: Union[str, List[ContentSegment]]
    created_at: datetime = Field(default_factory=utc_now)
    thinking: Optional[str] = None
    model: Optional[str] = None

    @property
    def text(self) -> str:
        """Flatten content to plain text for term extraction."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(
            part for part in (seg.searchable_text for seg in self.content) if part
        )

    @property
    def display_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return " ".join(
            part for part in (seg.display_text for seg in self.content) if part
        )


class ChatMemory(BaseModel):
    """A conversation with its derived metadata."""

    id: str = Field(default_factory=new_id)
    title: str
    messages: List[Message] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    summary: str = ""
    key_terms: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_message_at: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    analyzed_message_count: int = 0

    def record_json(self) -> str:
        """Serialize the chat record without its messages."""
        return self.model_dump_json(exclude={"messages"})

    @property
    def indexed_terms(self) -> set[str]:
        """Terms this chat is reachable by in the term index."""
        return set(self.tags) | set(self.key_terms)


class ChatBio(BaseModel):
    """Assistant persona/context description; one per installation."""

    id: str = Field(default_factory=new_id)
    name: str
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ChatStats(BaseModel):
    """Aggregate statistics over all chats."""

    total_chats: int = 0
    total_messages: int = 0
    most_used_tags: List[str] = Field(default_factory=list)


class ContextSnippet(BaseModel):
    """A scored snippet from another conversation."""

    chat_id: str
    title: str
    score: int
    text: str
