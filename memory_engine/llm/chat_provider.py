"""Completion client for memory digests and turn summaries.

Both callers send a short system prompt plus one condensed user message
and expect a few sentences back. Provider errors are reported as
``CompletionUnavailable`` so callers can fall back to heuristics.
Any OpenAI-compatible vendor works through ``base_url``.
"""

import time
from dataclasses import dataclass
from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI

from ..exceptions import CompletionUnavailable

logger = structlog.get_logger()


@dataclass
class ChatResponse:
    """Text returned by the completion model."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    duration_ms: int
    finish_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        """The model stopped at ``max_tokens`` mid-answer."""
        return self.finish_reason == "length"


class ChatProvider:
    """Completion model reached through the OpenAI SDK.

    SDK retries are disabled; the engine bounds each call with its own
    timeout and degrades instead of retrying.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 15.0,
    ) -> None:
        self.client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
        )
        self.model = model

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ChatResponse:
        """Run one completion.

        Raises:
            CompletionUnavailable: On provider error or an empty choice list.
        """
        used_model = model or self.model
        start = time.monotonic()

        try:
            response = await self.client.chat.completions.create(
                model=used_model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as exc:
            raise CompletionUnavailable(f"Completion provider error: {exc}") from exc

        if not response.choices:
            raise CompletionUnavailable(f"Model {used_model} returned no choices")

        duration_ms = int((time.monotonic() - start) * 1000)
        choice = response.choices[0]
        usage = response.usage
        result = ChatResponse(
            content=choice.message.content or "",
            model=response.model or used_model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            duration_ms=duration_ms,
            finish_reason=choice.finish_reason,
        )

        if result.truncated:
            logger.info("Completion cut at max_tokens", model=used_model, max_tokens=max_tokens)
        logger.debug(
            "Completion finished",
            model=result.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            duration_ms=duration_ms,
        )
        return result
