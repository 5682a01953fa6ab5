"""Memory manager -- the engine's single entry point.

Constructed explicitly with its store, model clients and settings; there
is no module-level instance. The chat layer calls ``assemble_context``
before a reply and ``finalize_turn`` after it.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from ..config.logging_config import configure_logging
from ..config.settings import Settings
from ..exceptions import EmbeddingUnavailable, MemoryEngineError
from ..llm.factory import create_chat_provider, create_embedding_client
from ..llm.interface import CompletionProvider, EmbeddingProvider
from ..storage.database import DatabaseManager
from .assembler import ContextAssembler
from .documents import DocumentRepository
from .extractor import PreferenceExtractor, TurnSummarizer
from .linker import DocumentLinker
from .models import (
    AssembledContext,
    ContextRequest,
    DocumentMemory,
    FinishedTurn,
    SessionState,
    UserPreferences,
    utcnow,
)
from .repository import ConversationRepository
from .scorer import ImportanceScorer, ImportanceWeights
from .search import RecordKind, SearchHit, SimilaritySearch
from .sessions import PreferenceRepository, SessionRepository
from .writer import MemoryWriter

logger = structlog.get_logger()


class MemoryManager:
    """Recall, persistence and document bookkeeping for conversations."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        embedder: EmbeddingProvider,
        settings: Settings,
        completion: Optional[CompletionProvider] = None,
    ) -> None:
        self._db = db_manager
        self._embedder = embedder
        self._settings = settings

        self.conversations = ConversationRepository(db_manager, settings.embedding_dim)
        self.documents = DocumentRepository(db_manager, settings.embedding_dim)
        self.preferences = PreferenceRepository(db_manager)
        self.sessions = SessionRepository(db_manager, settings.session_ttl_minutes)

        self.search = SimilaritySearch(
            self.conversations,
            self.documents,
            threshold=settings.similarity_threshold,
            limit=settings.search_limit,
        )
        self.scorer = ImportanceScorer(
            ImportanceWeights(
                messages=settings.importance_weight_messages,
                documents=settings.importance_weight_documents,
                artifacts=settings.importance_weight_artifacts,
                key_points=settings.importance_weight_key_points,
            ),
            message_saturation=settings.message_saturation,
            key_point_saturation=settings.key_point_saturation,
        )
        self.linker = DocumentLinker(self.documents, max_attempts=settings.link_retry_attempts)
        self.writer = MemoryWriter(
            conversations=self.conversations,
            documents=self.documents,
            preferences=self.preferences,
            embedder=embedder,
            summarizer=TurnSummarizer(completion, timeout=settings.completion_timeout),
            scorer=self.scorer,
            linker=self.linker,
            preference_extractor=PreferenceExtractor(),
            embed_attempts=settings.embed_retry_attempts,
            store_attempts=settings.store_retry_attempts,
            base_delay=settings.retry_base_delay,
            embedding_timeout=settings.embedding_timeout,
            sweep_batch=settings.pending_sweep_batch,
            sweep_failure_limit=settings.pending_sweep_failure_limit,
        )
        self.assembler = ContextAssembler(
            search=self.search,
            documents=self.documents,
            preferences=self.preferences,
            sessions=self.sessions,
            embedder=embedder,
            completion=completion,
            immediate_messages=settings.immediate_messages,
            message_char_limit=settings.message_char_limit,
            immediate_hard_char_limit=settings.immediate_hard_char_limit,
            token_budget=settings.context_token_budget,
            chars_per_token=settings.chars_per_token,
            read_timeout=settings.read_timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MemoryManager":
        """Build a manager with OpenAI-compatible clients.

        Also configures structlog from ``log_level`` and ``log_json``.

        Raises:
            ConfigurationError: If required connection settings are missing.
        """
        embedder = create_embedding_client(settings)
        completion = create_chat_provider(settings)
        configure_logging(settings.log_level, settings.log_json)
        return cls(
            db_manager=DatabaseManager(settings.database_path),
            embedder=embedder,
            settings=settings,
            completion=completion,
        )

    async def start(self, run_sweeper: bool = True) -> None:
        """Initialize storage and start the pending-embedding sweeper."""
        await self._db.initialize()
        if run_sweeper:
            self.writer.start_sweeper(self._settings.pending_sweep_interval)
        logger.info("Memory manager started")

    async def close(self) -> None:
        """Finish in-flight writes and release storage."""
        await self.writer.stop()
        await self.search.drain()
        await self._db.close()
        logger.info("Memory manager stopped")

    # --- Per-turn API ---

    async def assemble_context(
        self, request: Union[ContextRequest, Dict[str, Any]]
    ) -> AssembledContext:
        """Assemble the context for a turn; never raises engine errors.

        A malformed request payload yields an empty, degraded context.
        """
        if not isinstance(request, ContextRequest):
            try:
                request = ContextRequest.model_validate(request)
            except ValidationError as exc:
                logger.warning(
                    "Malformed context request, returning empty context",
                    errors=exc.error_count(),
                    error=str(exc),
                )
                return AssembledContext(long_term_degraded=True)

        try:
            return await self.assembler.assemble(request)
        except MemoryEngineError as exc:
            logger.warning(
                "Context assembly failed, returning immediate layer only",
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return AssembledContext(
                immediate=self.assembler.build_immediate(request.recent_messages),
                long_term_degraded=True,
            )

    def finalize_turn(self, turn: FinishedTurn) -> "asyncio.Task[Any]":
        """Persist a finished turn out-of-band.

        Returns the detached write task. Await it through
        ``asyncio.shield`` (or ``finalize_turn_and_wait``) if the caller
        may be cancelled.
        """
        return self.writer.dispatch(turn)

    async def finalize_turn_and_wait(self, turn: FinishedTurn) -> Any:
        """Persist a turn and wait for it; caller cancellation spares the write."""
        return await asyncio.shield(self.writer.dispatch(turn))

    def format_for_prompt(self, context: AssembledContext) -> str:
        """Format the long-term and synthesized layers as system-prompt text."""
        parts: list[str] = []

        if context.synthesized_summary:
            parts.append(f"Memory digest:\n{context.synthesized_summary}")

        long_term = context.long_term
        if long_term.relevant_memories:
            memories_text = "\n".join(f"- {m.summary}" for m in long_term.relevant_memories)
            parts.append(f"Relevant past conversations:\n{memories_text}")

        if long_term.linked_documents:
            docs_text = "\n".join(
                f"- [{d.document_id}] {d.summary}" for d in long_term.linked_documents
            )
            parts.append(f"Referenced documents:\n{docs_text}")

        prefs = long_term.user_preferences
        if prefs:
            prefs_lines = []
            if prefs.get("preferredQuestionTypes"):
                prefs_lines.append(
                    "- question types: " + ", ".join(prefs["preferredQuestionTypes"])
                )
            if prefs.get("difficultyBias"):
                prefs_lines.append(f"- difficulty bias: {prefs['difficultyBias']:+.2f}")
            if prefs.get("language"):
                prefs_lines.append(f"- language: {prefs['language']}")
            if prefs.get("communicationStyle"):
                prefs_lines.append(f"- style: {prefs['communicationStyle']}")
            if prefs_lines:
                parts.append("User preferences:\n" + "\n".join(prefs_lines))

        return "\n\n".join(parts)

    # --- Documents ---

    async def ingest_document(
        self,
        user_id: str,
        document_id: str,
        full_content: str,
        summary: str = "",
        title: Optional[str] = None,
        key_topics: Optional[List[str]] = None,
        structure: Optional[Dict[str, Any]] = None,
    ) -> DocumentMemory:
        """Store extracted document text in full and embed it.

        The document is stored even when embedding fails; it is then
        flagged for the pending sweep. A document with no text to embed
        is stored without a vector and is not flagged.
        """
        document = DocumentMemory(
            document_id=document_id,
            user_id=user_id,
            title=title,
            full_content=full_content,
            summary=summary,
            key_topics=key_topics or [],
            structure=structure or {},
        )
        text = document.embedding_text()
        if text.strip():
            document.embedding = await self.writer.embed_with_retry(text)
            document.pending_embedding = document.embedding is None
        await self.documents.upsert(document)
        return document

    async def get_document(self, document_id: str, user_id: str) -> Optional[DocumentMemory]:
        """Read a document and record the access."""
        document = await self.documents.get(document_id, user_id)
        if document:
            await self.documents.touch([document_id])
        return document

    async def link_document(self, document_id: str, conversation_id: str, user_id: str) -> bool:
        return await self.linker.link(document_id, conversation_id, user_id)

    # --- Direct search ---

    async def search_memories(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        depth_days: Optional[int] = None,
    ) -> List[SearchHit]:
        """Semantic search over a user's conversation memories."""
        depth = depth_days or self._settings.memory_depth_days
        return await self._search_by_text(
            user_id,
            query,
            RecordKind.CONVERSATION,
            limit,
            threshold,
            since=utcnow() - timedelta(days=depth),
        )

    async def search_documents(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchHit]:
        """Semantic search over a user's documents."""
        return await self._search_by_text(user_id, query, RecordKind.DOCUMENT, limit, threshold)

    async def _search_by_text(
        self,
        user_id: str,
        query: str,
        kind: RecordKind,
        limit: Optional[int],
        threshold: Optional[float],
        since: Any = None,
    ) -> List[SearchHit]:
        try:
            vector = await self._embedder.embed(query, timeout=self._settings.embedding_timeout)
        except EmbeddingUnavailable as exc:
            logger.warning("Search skipped, embedding unavailable", kind=kind.value, error=str(exc))
            return []
        return await self.search.search(
            vector, user_id, kind=kind, limit=limit, threshold=threshold, since=since
        )

    # --- Preferences and sessions ---

    async def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        return await self.preferences.get(user_id)

    async def set_preferences(self, preferences: UserPreferences) -> None:
        await self.preferences.upsert(preferences)

    async def start_session(
        self,
        user_id: str,
        session_id: str,
        active_document_ids: Optional[List[str]] = None,
    ) -> SessionState:
        return await self.sessions.start(user_id, session_id, active_document_ids)

    async def get_session(self, session_id: str, user_id: str) -> Optional[SessionState]:
        return await self.sessions.get(session_id, user_id)

    async def update_session(
        self,
        session_id: str,
        user_id: str,
        active_document_ids: Optional[List[str]] = None,
        current_plan_id: Optional[str] = None,
        scratch: Optional[Dict[str, Any]] = None,
    ) -> Optional[SessionState]:
        """Update a live session and refresh its expiry.

        Returns None if the session is gone or expired.
        """
        session = await self.sessions.get(session_id, user_id)
        if not session:
            return None

        if active_document_ids is not None:
            session.active_document_ids = list(dict.fromkeys(active_document_ids))
        if current_plan_id is not None:
            session.current_plan_id = current_plan_id
        if scratch:
            session.scratch.update(scratch)
        session.expires_at = utcnow() + self.sessions.ttl
        await self.sessions.save(session)
        return session

    async def sweep_pending(self) -> int:
        """Re-embed records stored without a vector."""
        return await self.writer.sweep_pending()
