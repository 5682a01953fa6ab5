"""MemoryWriter -- asynchronous persistence of finished turns.

Each finished turn is summarized, embedded, scored and upserted in a
detached asyncio task, so the user-facing response never waits on it and
cancelling the originating request does not cancel the write. Writes for
the same conversation are serialized through the repository lock.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, List, Optional, Set, TypeVar

import structlog

from ..exceptions import EmbeddingUnavailable, InvalidRecord, MemoryEngineError, StoreUnavailable
from ..llm.interface import EmbeddingProvider
from ..storage.locks import KeyedLock
from .documents import DocumentRepository
from .extractor import PreferenceExtractor, TurnSummarizer, merge_unique
from .linker import DocumentLinker
from .models import ArtifactRef, ConversationMemory, FinishedTurn
from .repository import ConversationRepository
from .scorer import ImportanceScorer
from .sessions import PreferenceRepository

logger = structlog.get_logger()

T = TypeVar("T")

# Caps for merged lists on a long-running conversation
MAX_STORED_KEY_POINTS = 20
MAX_STORED_DECISIONS = 20


def _merge_artifacts(existing: List[ArtifactRef], new: List[ArtifactRef]) -> List[ArtifactRef]:
    merged = {a.artifact_id: a for a in existing}
    for artifact in new:
        merged[artifact.artifact_id] = artifact
    return list(merged.values())


class _SweepProgress:
    """Counts repairs and pauses after consecutive embedding failures."""

    def __init__(self, failure_limit: int) -> None:
        self.failure_limit = failure_limit
        self.repaired = 0
        self.failures = 0

    def succeeded(self) -> None:
        self.repaired += 1
        self.failures = 0

    def failed(self) -> None:
        self.failures += 1

    @property
    def paused(self) -> bool:
        return self.failures >= self.failure_limit


class MemoryWriter:
    """Persists finished turns as conversation memories."""

    def __init__(
        self,
        conversations: ConversationRepository,
        documents: DocumentRepository,
        preferences: PreferenceRepository,
        embedder: EmbeddingProvider,
        summarizer: TurnSummarizer,
        scorer: ImportanceScorer,
        linker: DocumentLinker,
        preference_extractor: Optional[PreferenceExtractor] = None,
        embed_attempts: int = 3,
        store_attempts: int = 3,
        base_delay: float = 0.5,
        embedding_timeout: Optional[float] = None,
        sweep_batch: int = 50,
        sweep_failure_limit: int = 3,
    ) -> None:
        self._conversations = conversations
        self._documents = documents
        self._preferences = preferences
        self._embedder = embedder
        self._summarizer = summarizer
        self._scorer = scorer
        self._linker = linker
        self._preference_extractor = preference_extractor
        self._embed_attempts = embed_attempts
        self._store_attempts = store_attempts
        self._base_delay = base_delay
        self._embedding_timeout = embedding_timeout
        self._sweep_batch = sweep_batch
        self._sweep_failure_limit = sweep_failure_limit
        self._preference_locks = KeyedLock()
        self._writes: Set[asyncio.Task[Optional[ConversationMemory]]] = set()
        self._sweeper: Optional[asyncio.Task[None]] = None

    # --- Write path ---

    def dispatch(self, turn: FinishedTurn) -> "asyncio.Task[Optional[ConversationMemory]]":
        """Schedule ``write(turn)`` in a detached task and return it."""
        task = asyncio.create_task(
            self._write_detached(turn),
            name=f"memory-write-{turn.conversation_id}",
        )
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return task

    async def _write_detached(self, turn: FinishedTurn) -> Optional[ConversationMemory]:
        try:
            return await self.write(turn)
        except Exception:
            logger.exception(
                "Memory write crashed",
                conversation_id=turn.conversation_id,
                user_id=turn.user_id,
            )
            return None

    async def write(self, turn: FinishedTurn) -> Optional[ConversationMemory]:
        """Summarize, embed, score and upsert a finished turn.

        Returns:
            The stored memory, or None if it was rejected or the store
            stayed unavailable.
        """
        if not turn.messages:
            logger.debug("Skipping empty turn", conversation_id=turn.conversation_id)
            return None

        async with self._conversations.lock(turn.conversation_id):
            try:
                existing = await self._with_store_retry(
                    self._conversations.get, turn.conversation_id
                )
                if existing and existing.user_id != turn.user_id:
                    raise InvalidRecord(
                        "conversation belongs to another user", turn.conversation_id
                    )
                memory = await self._build(turn, existing)
                await self._with_store_retry(self._conversations.upsert, memory)
            except InvalidRecord as exc:
                logger.error(
                    "Rejected malformed memory",
                    conversation_id=turn.conversation_id,
                    reason=exc.reason,
                )
                return None
            except StoreUnavailable as exc:
                logger.error(
                    "Memory store unavailable, turn memory lost",
                    conversation_id=turn.conversation_id,
                    error=str(exc),
                )
                return None

        if turn.document_ids:
            await self._linker.link_all(turn.document_ids, turn.conversation_id, turn.user_id)

        await self._update_preferences(turn)

        logger.info(
            "Conversation memory written",
            conversation_id=memory.conversation_id,
            user_id=memory.user_id,
            message_count=memory.message_count,
            importance=round(memory.importance, 3),
            pending_embedding=memory.pending_embedding,
        )
        return memory

    async def _build(
        self, turn: FinishedTurn, existing: Optional[ConversationMemory]
    ) -> ConversationMemory:
        summary = await self._summarizer.summarize(
            turn.messages, previous_summary=existing.summary if existing else None
        )
        embedding = await self.embed_with_retry(summary.summary)

        if existing:
            memory = existing.model_copy(deep=True)
            memory.key_points = merge_unique(
                existing.key_points, summary.key_points, MAX_STORED_KEY_POINTS
            )
            memory.decisions = merge_unique(
                existing.decisions, summary.decisions, MAX_STORED_DECISIONS
            )
            memory.document_ids = list(dict.fromkeys([*existing.document_ids, *turn.document_ids]))
            memory.artifacts = _merge_artifacts(existing.artifacts, turn.artifacts)
            memory.message_count = existing.message_count + len(turn.messages)
            memory.start_time = existing.start_time or turn.started_at
        else:
            memory = ConversationMemory(
                user_id=turn.user_id,
                conversation_id=turn.conversation_id,
                key_points=summary.key_points,
                decisions=summary.decisions,
                document_ids=list(dict.fromkeys(turn.document_ids)),
                artifacts=list(turn.artifacts),
                message_count=len(turn.messages),
                start_time=turn.started_at or turn.ended_at,
            )

        memory.session_id = turn.session_id or memory.session_id
        memory.summary = summary.summary
        memory.embedding = embedding
        memory.pending_embedding = embedding is None
        memory.end_time = turn.ended_at
        memory.importance = self._scorer.score_memory(memory)
        return memory

    async def embed_with_retry(self, text: str) -> Optional[List[float]]:
        """Embed with bounded exponential backoff; None once attempts run out."""
        for attempt in range(self._embed_attempts):
            try:
                return await self._embedder.embed(text, timeout=self._embedding_timeout)
            except EmbeddingUnavailable as exc:
                logger.warning(
                    "Embedding attempt failed",
                    attempt=attempt + 1,
                    max_attempts=self._embed_attempts,
                    error=str(exc),
                )
                if attempt < self._embed_attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))
        return None

    async def _with_store_retry(
        self, operation: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        for attempt in range(self._store_attempts):
            try:
                return await operation(*args)
            except StoreUnavailable as exc:
                if attempt == self._store_attempts - 1:
                    raise
                logger.warning(
                    "Store attempt failed",
                    attempt=attempt + 1,
                    max_attempts=self._store_attempts,
                    error=str(exc),
                )
                await asyncio.sleep(self._backoff(attempt))
        raise StoreUnavailable("no store attempts configured")

    def _backoff(self, attempt: int) -> float:
        # Exponential backoff with jitter
        return self._base_delay * (2**attempt) + random.uniform(0, self._base_delay)

    async def _update_preferences(self, turn: FinishedTurn) -> None:
        if not self._preference_extractor:
            return
        async with self._preference_locks.hold(turn.user_id):
            try:
                current = await self._preferences.get(turn.user_id)
                updated = self._preference_extractor.apply(turn.user_id, current, turn.messages)
                if updated:
                    await self._preferences.upsert(updated)
            except StoreUnavailable as exc:
                logger.warning(
                    "Preference update skipped", user_id=turn.user_id, error=str(exc)
                )

    # --- Pending-embedding sweep ---

    async def sweep_pending(self, limit: Optional[int] = None) -> int:
        """Re-embed memories stored without a vector.

        A record that fails to embed is skipped. The sweep pauses once
        ``sweep_failure_limit`` records in a row have failed, which is
        taken as a provider outage.

        Returns:
            Number of records that received an embedding.
        """
        limit = limit or self._sweep_batch
        sweep = _SweepProgress(self._sweep_failure_limit)

        for pending in await self._conversations.list_pending(limit):
            async with self._conversations.lock(pending.conversation_id):
                current = await self._conversations.get(pending.conversation_id)
                if not current or not current.pending_embedding:
                    continue
                await self._repair(
                    sweep,
                    current.conversation_id,
                    current.summary,
                    self._conversations.set_embedding,
                )
            if sweep.paused:
                return sweep.repaired

        for document in await self._documents.list_pending(limit):
            text = document.embedding_text()
            if not text.strip():
                await self._documents.clear_pending(document.document_id)
                continue
            await self._repair(sweep, document.document_id, text, self._documents.set_embedding)
            if sweep.paused:
                return sweep.repaired

        if sweep.repaired:
            logger.info("Pending embeddings repaired", count=sweep.repaired)
        return sweep.repaired

    async def _repair(
        self,
        sweep: "_SweepProgress",
        record_id: str,
        text: str,
        store: Callable[[str, List[float]], Awaitable[None]],
    ) -> None:
        try:
            vector = await self._embedder.embed(text, timeout=self._embedding_timeout)
            await store(record_id, vector)
        except EmbeddingUnavailable as exc:
            sweep.failed()
            logger.warning("Pending embedding failed", record_id=record_id, error=str(exc))
            if sweep.paused:
                logger.info(
                    "Embedding still unavailable, sweep paused", failures=sweep.failures
                )
            return
        except InvalidRecord as exc:
            logger.error("Rejected late embedding", record_id=exc.record_id, reason=exc.reason)
            return
        sweep.succeeded()

    def start_sweeper(self, interval: float) -> None:
        """Run ``sweep_pending`` every ``interval`` seconds."""
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="memory-sweeper")

    async def _sweep_loop(self, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.sweep_pending()
                except MemoryEngineError as exc:
                    logger.warning("Pending sweep failed", error=str(exc))
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        """Wait for every dispatched write to finish."""
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def stop(self) -> None:
        """Stop the sweeper and let in-flight writes complete."""
        if self._sweeper and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None
        await self.drain()

    @property
    def in_flight(self) -> int:
        return len(self._writes)
