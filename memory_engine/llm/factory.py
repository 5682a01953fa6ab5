"""Model client factory.

Creates the embedding and completion clients from application settings.
"""

from ..config.settings import Settings
from ..exceptions import ConfigurationError
from .chat_provider import ChatProvider
from .embedding_client import EmbeddingClient


def _require_api_key(settings: Settings) -> str:
    api_key = settings.openai_api_key_str
    if not api_key:
        raise ConfigurationError(
            "OPENAI_API_KEY is required for the embedding and completion clients"
        )
    return api_key


def create_embedding_client(settings: Settings) -> EmbeddingClient:
    """Create the embedding client.

    Raises:
        ConfigurationError: If no API key is configured.
    """
    return EmbeddingClient(
        model=settings.embedding_model,
        api_key=_require_api_key(settings),
        dimensions=settings.embedding_dim,
        base_url=settings.openai_base_url,
        timeout=settings.embedding_timeout,
    )


def create_chat_provider(settings: Settings) -> ChatProvider:
    """Create the completion provider.

    Raises:
        ConfigurationError: If no API key is configured.
    """
    return ChatProvider(
        model=settings.completion_model,
        api_key=_require_api_key(settings),
        base_url=settings.openai_base_url,
        timeout=settings.completion_timeout,
    )
