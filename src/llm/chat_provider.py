"""OpenAI-compatible chat provider used by the summarizer.

Uses the openai SDK, which also talks to DeepSeek and other
OpenAI-compatible vendors through ``base_url``.
"""

import time
from dataclasses import dataclass
from typing import Optional

import structlog
from openai import AsyncOpenAI

logger = structlog.get_logger()


@dataclass
class ChatResponse:
    """Response from a chat completion."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    duration_ms: int


class ChatProvider:
    """Thin async wrapper around chat completions."""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
    ) -> None:
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 512,
        temperature: float = 0.3,
    ) -> ChatResponse:
        """Send chat completion request."""
        used_model = model or self.model
        start = time.monotonic()

        response = await self.client.chat.completions.create(
            model=used_model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        duration_ms = int((time.monotonic() - start) * 1000)
        choice = response.choices[0]
        usage = response.usage

        logger.debug(
            "Chat completion finished",
            model=used_model,
            duration_ms=duration_ms,
        )

        return ChatResponse(
            content=choice.message.content or "",
            model=response.model or used_model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            duration_ms=duration_ms,
        )

    async def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: int = 200,
    ) -> str:
        """Single system+user exchange returning the reply text."""
        response = await self.chat(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=0.3,
        )
        return response.content
