"""OpenAI embedding client."""

import asyncio
from typing import List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from ..exceptions import EmbeddingUnavailable

logger = structlog.get_logger()

# text-embedding-3-* accept at most 8191 tokens; 100k chars stays well clear
MAX_CONTENT_LENGTH = 100_000


class EmbeddingClient:
    """Embedding API wrapper.

    Any provider failure, timeout, or a vector of the wrong length is
    reported as ``EmbeddingUnavailable``. Callers decide how to degrade.
    Caching identical inputs is the caller's business.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        dimensions: int,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Generate an embedding for ``text``.

        Args:
            text: Text to embed; truncated to ``MAX_CONTENT_LENGTH`` chars.
            timeout: Per-call timeout, defaults to the client timeout.

        Returns:
            Vector of ``dimensions`` floats.

        Raises:
            EmbeddingUnavailable: On timeout, provider error, or bad shape.
        """
        if not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text")

        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(
                    model=self.model,
                    input=text[:MAX_CONTENT_LENGTH],
                    dimensions=self.dimensions,
                ),
                timeout=timeout or self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingUnavailable(
                f"Embedding timed out after {timeout or self.timeout}s"
            ) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingUnavailable(f"Embedding provider error: {exc}") from exc

        vector = list(response.data[0].embedding)
        if len(vector) != self.dimensions:
            raise EmbeddingUnavailable(
                f"Expected {self.dimensions} dimensions, got {len(vector)}"
            )
        return vector
