"""Memory data models.

Records (conversation and document memories, preferences, session state)
carry typed lists; JSON and float32 blobs only exist at the storage
boundary. Wire models (``ContextRequest``, ``AssembledContext``) accept and
produce the camelCase shape the chat layer speaks.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..storage.vectors import decode_embedding

# Leading chunk embedded when a document has no summary
EMBED_CHUNK_CHARS = 4000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 text for storage; naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _loads(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, dict)):
        return raw
    return json.loads(raw)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(_WireModel):
    """One raw message of a conversation."""

    role: str
    content: str
    timestamp: Optional[datetime] = None


class ArtifactRef(BaseModel):
    """Reference to something generated during a turn (quiz, plan, form)."""

    artifact_id: str
    kind: str = "artifact"
    title: Optional[str] = None


class ConversationMemory(BaseModel):
    """A summarized conversation, keyed by conversation id."""

    user_id: str
    conversation_id: str
    session_id: Optional[str] = None
    summary: str = ""
    key_points: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    document_ids: List[str] = Field(default_factory=list)
    artifacts: List[ArtifactRef] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    pending_embedding: bool = False
    importance: float = Field(default=0.0, ge=0.0, le=1.0)
    message_count: int = 0
    access_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Any) -> "ConversationMemory":
        """Create from database row."""
        data = dict(row)
        for key in ("key_points", "decisions", "document_ids", "artifacts"):
            data[key] = _loads(data.get(key), [])
        data["embedding"] = decode_embedding(data.get("embedding"))
        data["pending_embedding"] = bool(data.get("pending_embedding"))
        return cls(**data)


class DocumentMemory(BaseModel):
    """Full-content record of an uploaded or referenced document.

    ``full_content`` is stored and returned exactly as given.
    """

    document_id: str
    user_id: str
    title: Optional[str] = None
    full_content: str
    summary: str = ""
    key_topics: List[str] = Field(default_factory=list)
    structure: Dict[str, Any] = Field(default_factory=dict)
    embedding: Optional[List[float]] = None
    pending_embedding: bool = False
    conversation_ids: List[str] = Field(default_factory=list)
    access_count: int = 0
    last_accessed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def embedding_text(self) -> str:
        """Text the document vector is computed from."""
        return self.summary.strip() or self.full_content[:EMBED_CHUNK_CHARS]

    @classmethod
    def from_row(cls, row: Any) -> "DocumentMemory":
        """Create from database row."""
        data = dict(row)
        data["key_topics"] = _loads(data.get("key_topics"), [])
        data["conversation_ids"] = _loads(data.get("conversation_ids"), [])
        data["structure"] = _loads(data.get("structure"), {})
        data["embedding"] = decode_embedding(data.get("embedding"))
        data["pending_embedding"] = bool(data.get("pending_embedding"))
        return cls(**data)


class UserPreferences(BaseModel):
    """Accumulated personalization signal, one record per user."""

    user_id: str
    question_type_counts: Dict[str, int] = Field(default_factory=dict)
    difficulty_bias: float = Field(default=0.0, ge=-1.0, le=1.0)
    language: Optional[str] = None
    communication_style: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def preferred_question_types(self) -> List[str]:
        """Question types ordered by how often the user asked for them."""
        return [
            name
            for name, _ in sorted(
                self.question_type_counts.items(), key=lambda kv: (-kv[1], kv[0])
            )
        ]

    def to_context(self) -> Dict[str, Any]:
        """Compact form embedded in the assembled context."""
        return {
            "preferredQuestionTypes": self.preferred_question_types,
            "difficultyBias": self.difficulty_bias,
            "language": self.language,
            "communicationStyle": self.communication_style,
        }

    @classmethod
    def from_row(cls, row: Any) -> "UserPreferences":
        """Create from database row."""
        data = dict(row)
        data["question_type_counts"] = _loads(data.get("question_type_counts"), {})
        return cls(**data)


class SessionState(BaseModel):
    """Ephemeral working memory of a live session."""

    session_id: str
    user_id: str
    active_document_ids: List[str] = Field(default_factory=list)
    current_plan_id: Optional[str] = None
    scratch: Dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def from_row(cls, row: Any) -> "SessionState":
        """Create from database row."""
        data = dict(row)
        data["active_document_ids"] = _loads(data.get("active_document_ids"), [])
        data["scratch"] = _loads(data.get("scratch"), {})
        return cls(**data)


class FinishedTurn(BaseModel):
    """A completed turn handed to the memory writer.

    ``messages`` holds the messages produced since the previous finalize
    of the same conversation.
    """

    user_id: str
    conversation_id: str
    session_id: Optional[str] = None
    messages: List[ChatMessage]
    document_ids: List[str] = Field(default_factory=list)
    artifacts: List[ArtifactRef] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: datetime = Field(default_factory=utcnow)


# --- Wire models ---


class ContextRequest(_WireModel):
    """Per-turn request from the chat layer."""

    user_id: str
    conversation_id: str
    session_id: Optional[str] = None
    current_message_text: str = ""
    attached_document_ids: List[str] = Field(default_factory=list)
    enable_memory: bool = True
    memory_depth_days: int = Field(default=30, gt=0)
    recent_messages: List[ChatMessage] = Field(default_factory=list)


class ImmediateMessage(_WireModel):
    role: str
    content: str


class RelevantMemory(_WireModel):
    conversation_id: str
    summary: str
    similarity: float
    importance: float


class LinkedDocument(_WireModel):
    document_id: str
    summary: str
    last_used: Optional[datetime] = None


class LongTermContext(_WireModel):
    relevant_memories: List[RelevantMemory] = Field(default_factory=list)
    linked_documents: List[LinkedDocument] = Field(default_factory=list)
    user_preferences: Dict[str, Any] = Field(default_factory=dict)


class AssembledContext(_WireModel):
    """Bounded context for one turn."""

    immediate: List[ImmediateMessage] = Field(default_factory=list)
    long_term: LongTermContext = Field(default_factory=LongTermContext)
    synthesized_summary: str = ""
    long_term_degraded: bool = False

    def to_response(self) -> Dict[str, Any]:
        """Serialize to the camelCase response shape."""
        return self.model_dump(mode="json", by_alias=True)
