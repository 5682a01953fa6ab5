"""External model clients: embeddings and chat completion."""

from .chat_provider import ChatProvider, ChatResponse
from .embedding_client import EmbeddingClient
from .interface import CompletionProvider, EmbeddingProvider

__all__ = [
    "ChatProvider",
    "ChatResponse",
    "CompletionProvider",
    "EmbeddingClient",
    "EmbeddingProvider",
]
