"""Cosine similarity search over conversation and document memories."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, Sequence, Set, TypeVar, Union

import numpy as np
import structlog

from ..exceptions import MemoryEngineError
from ..storage.vectors import cosine_similarities
from .documents import DocumentRepository
from .models import ConversationMemory, DocumentMemory
from .repository import ConversationRepository

logger = structlog.get_logger()

R = TypeVar("R", ConversationMemory, DocumentMemory)


class RecordKind(str, Enum):
    CONVERSATION = "conversation"
    DOCUMENT = "document"


@dataclass
class SearchHit(Generic[R]):
    """A record that passed the similarity threshold."""

    record: R
    similarity: float


def _recency(record: Union[ConversationMemory, DocumentMemory]) -> float:
    moment: Optional[datetime]
    if isinstance(record, ConversationMemory):
        moment = record.end_time or record.updated_at
    else:
        moment = record.last_accessed or record.created_at
    return moment.timestamp() if moment else 0.0


def rank_key(hit: SearchHit) -> tuple:
    """Similarity first, then importance, then recency; all descending."""
    importance = getattr(hit.record, "importance", 0.0)
    return (-hit.similarity, -importance, -_recency(hit.record))


class SimilaritySearch:
    """Brute-force cosine search scoped to one user.

    Read-only apart from access counters on returned records, which are
    bumped in a detached task so the caller never waits on them.
    """

    def __init__(
        self,
        conversations: ConversationRepository,
        documents: DocumentRepository,
        threshold: float = 0.7,
        limit: int = 10,
    ) -> None:
        self._conversations = conversations
        self._documents = documents
        self.threshold = threshold
        self.limit = limit
        self._access_tasks: Set[asyncio.Task[None]] = set()

    async def search(
        self,
        query_vector: Sequence[float],
        user_id: str,
        kind: RecordKind = RecordKind.CONVERSATION,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        since: Optional[datetime] = None,
        exclude_conversation_id: Optional[str] = None,
    ) -> List[SearchHit]:
        """Return up to ``limit`` records with similarity >= ``threshold``.

        Args:
            query_vector: Embedded query.
            user_id: Owner whose records are searched.
            kind: Conversation or document memories.
            limit: Result cap, defaults to the configured N.
            threshold: Minimum similarity, defaults to the configured theta.
            since: Ignore conversation memories that ended before this.
            exclude_conversation_id: Conversation left out before ranking.

        Returns:
            Hits ordered by similarity, importance and recency.
        """
        limit = self.limit if limit is None else limit
        threshold = self.threshold if threshold is None else threshold

        candidates: Sequence[Union[ConversationMemory, DocumentMemory]]
        if kind is RecordKind.CONVERSATION:
            candidates = await self._conversations.search_candidates(
                user_id, since, exclude_conversation_id
            )
        else:
            candidates = await self._documents.search_candidates(user_id)

        dim = len(query_vector)
        usable = [c for c in candidates if c.embedding is not None and len(c.embedding) == dim]
        if not usable or limit <= 0:
            return []

        matrix = np.array([c.embedding for c in usable], dtype=np.float64)
        sims = cosine_similarities(query_vector, matrix)

        hits = [
            SearchHit(record=record, similarity=float(sim))
            for record, sim in zip(usable, sims)
            if sim >= threshold
        ]
        hits.sort(key=rank_key)
        top = hits[:limit]

        logger.debug(
            "Similarity search finished",
            user_id=user_id,
            kind=kind.value,
            candidates=len(usable),
            returned=len(top),
        )

        if top:
            self._record_access(kind, [self._record_id(h.record) for h in top])
        return top

    @staticmethod
    def _record_id(record: Union[ConversationMemory, DocumentMemory]) -> str:
        if isinstance(record, ConversationMemory):
            return record.conversation_id
        return record.document_id

    def _record_access(self, kind: RecordKind, record_ids: List[str]) -> None:
        task = asyncio.create_task(
            self._increment_access(kind, record_ids), name=f"access-{kind.value}"
        )
        self._access_tasks.add(task)
        task.add_done_callback(self._access_tasks.discard)

    async def _increment_access(self, kind: RecordKind, record_ids: List[str]) -> None:
        try:
            if kind is RecordKind.CONVERSATION:
                await self._conversations.increment_access(record_ids)
            else:
                await self._documents.increment_access(record_ids)
        except MemoryEngineError as exc:
            logger.debug("Access count update dropped", kind=kind.value, error=str(exc))

    async def drain(self) -> None:
        """Wait for outstanding access-count updates."""
        if self._access_tasks:
            await asyncio.gather(*list(self._access_tasks), return_exceptions=True)
