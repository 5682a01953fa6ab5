"""Application settings loaded from the environment."""

from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Memory engine settings.

    Values come from environment variables (case-insensitive) or a ``.env``
    file. Invalid combinations fail at construction time, before any turn
    is served.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = "sqlite:///data/memory.db"

    # External model providers
    openai_api_key: Optional[SecretStr] = None
    openai_base_url: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dim: int = Field(default=1536, gt=0)
    embedding_timeout: float = Field(default=10.0, gt=0)
    completion_model: str = "gpt-4o-mini"
    completion_timeout: float = Field(default=15.0, gt=0)

    # Similarity search
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    search_limit: int = Field(default=10, gt=0)
    memory_depth_days: int = Field(default=30, gt=0)

    # Context assembly
    immediate_messages: int = Field(default=6, gt=0)
    message_char_limit: int = Field(default=3000, gt=0)
    immediate_hard_char_limit: int = Field(default=60000, gt=0)
    context_token_budget: int = Field(default=4000, gt=0)
    chars_per_token: int = Field(default=4, gt=0)
    read_timeout: float = Field(default=5.0, gt=0)

    # Importance scoring
    importance_weight_messages: float = Field(default=0.3, ge=0.0)
    importance_weight_documents: float = Field(default=0.2, ge=0.0)
    importance_weight_artifacts: float = Field(default=0.2, ge=0.0)
    importance_weight_key_points: float = Field(default=0.3, ge=0.0)
    message_saturation: int = Field(default=20, gt=0)
    key_point_saturation: int = Field(default=5, gt=0)

    # Write path
    embed_retry_attempts: int = Field(default=3, gt=0)
    store_retry_attempts: int = Field(default=3, gt=0)
    link_retry_attempts: int = Field(default=5, gt=0)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    pending_sweep_interval: float = Field(default=300.0, gt=0)
    pending_sweep_batch: int = Field(default=50, gt=0)
    pending_sweep_failure_limit: int = Field(default=3, gt=0)

    # Sessions
    session_ttl_minutes: int = Field(default=120, gt=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def _check_importance_weights(self) -> "Settings":
        total = (
            self.importance_weight_messages
            + self.importance_weight_documents
            + self.importance_weight_artifacts
            + self.importance_weight_key_points
        )
        if total > 1.0 + 1e-9:
            raise ValueError(
                f"Importance weights must sum to at most 1.0, got {total:.3f}"
            )
        return self

    @property
    def openai_api_key_str(self) -> Optional[str]:
        """Plain-text API key, or None when unset."""
        if self.openai_api_key is None:
            return None
        return self.openai_api_key.get_secret_value() or None

    @property
    def database_path(self) -> str:
        """Filesystem path extracted from a ``sqlite:///`` URL."""
        prefix = "sqlite:///"
        if self.database_url.startswith(prefix):
            return self.database_url[len(prefix):]
        return self.database_url
