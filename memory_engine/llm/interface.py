"""Interfaces for the external model collaborators.

The memory engine talks to two network services: an embedding model and a
chat-completion model. Both are reached through the narrow protocols below
so the engine can run against fakes in tests and against any vendor in
production.
"""

from typing import List, Optional, Protocol

from .chat_provider import ChatResponse


class EmbeddingProvider(Protocol):
    """Converts text into a fixed-length vector."""

    dimensions: int

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Embed a single text.

        Args:
            text: Text to embed.
            timeout: Optional per-call timeout in seconds.

        Returns:
            Vector of exactly ``dimensions`` floats.

        Raises:
            EmbeddingUnavailable: On provider error or timeout.
        """
        ...


class CompletionProvider(Protocol):
    """Chat-completion model used for digests and summaries."""

    async def chat(
        self,
        messages: list[dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> ChatResponse:
        """Send a chat completion request.

        Raises:
            CompletionUnavailable: On provider error.
        """
        ...
