"""Application settings loaded from environment variables.

All fields can be overridden with ``CHAT_MEMORY_``-prefixed environment
variables or a ``.env`` file in the working directory.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Chat memory configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHAT_MEMORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///chat_memory.db",
        description="SQLite database URL or ':memory:'",
    )

    # Summarizer
    summarizer_provider: Literal["heuristic", "openai"] = Field(
        default="heuristic",
        description="Backend used to produce titles, summaries and tags",
    )
    openai_api_key: Optional[SecretStr] = None
    summarizer_model: str = "gpt-4o-mini"
    summarizer_base_url: Optional[str] = None
    summarizer_timeout_seconds: float = Field(default=30.0, gt=0)

    # Analysis scheduling
    analysis_min_messages: int = 5
    analysis_period: int = 3
    analysis_on_user_turn: bool = True
    analysis_in_background: bool = True

    # Term extraction
    key_terms_limit: int = 15
    query_terms_limit: int = 5
    min_term_length: int = 3

    # Context retrieval
    context_top_k: int = 3
    context_tag_weight: int = 2
    context_snippet_chars: int = 280
    context_max_tags: int = 5

    # Chat management
    title_max_length: int = 100
    stats_top_tags: int = 10

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator(
        "analysis_period",
        "key_terms_limit",
        "query_terms_limit",
        "min_term_length",
        "context_top_k",
        "context_tag_weight",
        "context_snippet_chars",
        "title_max_length",
        "stats_top_tags",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("analysis_min_messages", "context_max_tags")
    @classmethod
    def _must_not_be_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {value}")
        return level

    @property
    def openai_api_key_str(self) -> Optional[str]:
        """Plain-text OpenAI key, or None when unset."""
        if self.openai_api_key is None:
            return None
        return self.openai_api_key.get_secret_value() or None


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
