"""Context assembly for a single chat turn.

Three layers are produced:

- Immediate: the last K raw messages of the conversation, each clipped.
- Long-term: semantically similar past conversations, documents attached
  to (or linked with) the turn, and the user's preferences.
- Synthesized: a short digest of the two, written by the completion model.

The long-term lookups run concurrently under one read timeout. Anything
that fails or runs late is dropped and the response is flagged
``long_term_degraded``; assembly itself never fails because memory is
unavailable.
"""

import asyncio
import json
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..exceptions import CompletionUnavailable
from ..llm.interface import CompletionProvider, EmbeddingProvider
from .documents import DocumentRepository
from .models import (
    AssembledContext,
    ChatMessage,
    ContextRequest,
    DocumentMemory,
    ImmediateMessage,
    LinkedDocument,
    LongTermContext,
    RelevantMemory,
    utcnow,
)
from .search import RecordKind, SearchHit, SimilaritySearch
from .sessions import PreferenceRepository, SessionRepository

logger = structlog.get_logger()

SYNTHESIZE_SYSTEM = """\
You maintain the memory of a teaching assistant.
Given the recent exchange, relevant past conversations, referenced documents and
the user's preferences, write a digest of at most 4 sentences that tells the
assistant what it should remember for the next reply. Do not invent facts."""

_MISSING = object()


class ContextAssembler:
    """Builds one ``AssembledContext`` per turn."""

    def __init__(
        self,
        search: SimilaritySearch,
        documents: DocumentRepository,
        preferences: PreferenceRepository,
        sessions: SessionRepository,
        embedder: EmbeddingProvider,
        completion: Optional[CompletionProvider] = None,
        immediate_messages: int = 6,
        message_char_limit: int = 3000,
        immediate_hard_char_limit: int = 60000,
        token_budget: int = 4000,
        chars_per_token: int = 4,
        read_timeout: float = 5.0,
    ) -> None:
        self._search = search
        self._documents = documents
        self._preferences = preferences
        self._sessions = sessions
        self._embedder = embedder
        self._completion = completion
        self.immediate_messages = immediate_messages
        self.message_char_limit = message_char_limit
        self.immediate_hard_char_limit = immediate_hard_char_limit
        self.token_budget = token_budget
        self.chars_per_token = chars_per_token
        self.read_timeout = read_timeout

    async def assemble(self, request: ContextRequest) -> AssembledContext:
        """Assemble the bounded context for ``request``.

        Cancelling the caller cancels the in-flight lookups.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.read_timeout

        immediate = self.build_immediate(request.recent_messages)
        if not request.enable_memory:
            return AssembledContext(immediate=immediate)

        lookups: Dict[str, asyncio.Task[Any]] = {
            "memories": asyncio.create_task(
                self._search_memories(request, exclude_current=bool(immediate))
            ),
            "documents": asyncio.create_task(self._load_documents(request)),
            "preferences": asyncio.create_task(self._preferences.get(request.user_id)),
        }
        try:
            await asyncio.wait(lookups.values(), timeout=self.read_timeout)
        finally:
            for task in lookups.values():
                if not task.done():
                    task.cancel()

        degraded = False
        hits = self._collect(lookups["memories"], "memories", request)
        if hits is _MISSING:
            degraded, hits = True, []
        documents = self._collect(lookups["documents"], "documents", request)
        if documents is _MISSING:
            degraded, documents = True, []
        preferences = self._collect(lookups["preferences"], "preferences", request)
        if preferences is _MISSING:
            degraded, preferences = True, None

        long_term = LongTermContext(
            relevant_memories=self._relevant(hits),
            linked_documents=[
                LinkedDocument(
                    document_id=d.document_id,
                    summary=d.summary,
                    last_used=d.last_accessed,
                )
                for d in documents
            ],
            user_preferences=preferences.to_context() if preferences else {},
        )
        self.fit_budget(immediate, long_term)

        synthesized = await self._synthesize(
            request, immediate, long_term, remaining=deadline - loop.time()
        )

        if degraded:
            logger.warning(
                "Long-term context degraded",
                user_id=request.user_id,
                conversation_id=request.conversation_id,
            )

        return AssembledContext(
            immediate=immediate,
            long_term=long_term,
            synthesized_summary=synthesized,
            long_term_degraded=degraded,
        )

    # --- Layers ---

    def build_immediate(self, recent: Sequence[ChatMessage]) -> List[ImmediateMessage]:
        """Last K messages, each clipped to the per-message ceiling."""
        window = list(recent)[-self.immediate_messages:]
        immediate = [
            ImmediateMessage(role=m.role, content=m.content[: self.message_char_limit])
            for m in window
        ]
        # Hard absolute ceiling; drop oldest first
        while (
            len(immediate) > 1
            and sum(len(m.content) for m in immediate) > self.immediate_hard_char_limit
        ):
            immediate.pop(0)
        return immediate

    async def _search_memories(
        self, request: ContextRequest, exclude_current: bool
    ) -> List[SearchHit]:
        query = request.current_message_text.strip()
        if not query:
            return []
        vector = await self._embedder.embed(query, timeout=self.read_timeout)
        since = utcnow() - timedelta(days=request.memory_depth_days)
        return await self._search.search(
            vector,
            request.user_id,
            kind=RecordKind.CONVERSATION,
            since=since,
            # The current conversation is already present verbatim
            exclude_conversation_id=request.conversation_id if exclude_current else None,
        )

    async def _load_documents(self, request: ContextRequest) -> List[DocumentMemory]:
        wanted: List[str] = list(request.attached_document_ids)

        if request.session_id:
            session = await self._sessions.get(request.session_id, request.user_id)
            if session:
                wanted.extend(session.active_document_ids)

        documents = await self._documents.get_many(request.user_id, wanted)
        seen = {d.document_id for d in documents}
        for linked in await self._documents.list_for_conversation(
            request.user_id, request.conversation_id
        ):
            if linked.document_id not in seen:
                documents.append(linked)
                seen.add(linked.document_id)

        if documents:
            await self._documents.touch([d.document_id for d in documents])
        return documents

    @staticmethod
    def _collect(task: "asyncio.Task[Any]", name: str, request: ContextRequest) -> Any:
        if not task.done() or task.cancelled():
            logger.warning(
                "Context lookup timed out",
                lookup=name,
                conversation_id=request.conversation_id,
            )
            return _MISSING
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Context lookup failed",
                lookup=name,
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return _MISSING
        return task.result()

    @staticmethod
    def _relevant(hits: Sequence[SearchHit]) -> List[RelevantMemory]:
        return [
            RelevantMemory(
                conversation_id=hit.record.conversation_id,
                summary=hit.record.summary,
                similarity=round(hit.similarity, 4),
                importance=hit.record.importance,
            )
            for hit in hits
        ]

    # --- Budget ---

    def estimate_tokens(
        self, immediate: Sequence[ImmediateMessage], long_term: LongTermContext
    ) -> int:
        payload = {
            "immediate": [m.model_dump(mode="json") for m in immediate],
            "longTerm": long_term.model_dump(mode="json", by_alias=True),
        }
        return math.ceil(len(json.dumps(payload)) / self.chars_per_token)

    def fit_budget(
        self, immediate: Sequence[ImmediateMessage], long_term: LongTermContext
    ) -> int:
        """Drop lowest-ranked long-term entries until the budget is met.

        Memories go first (from the bottom of the ranking), then linked
        documents. Immediate is left alone. Returns how many entries were
        dropped.
        """
        dropped = 0
        while self.estimate_tokens(immediate, long_term) > self.token_budget:
            if long_term.relevant_memories:
                long_term.relevant_memories.pop()
            elif long_term.linked_documents:
                long_term.linked_documents.pop()
            else:
                break
            dropped += 1

        if dropped:
            logger.debug("Trimmed long-term context to budget", dropped=dropped)
        return dropped

    # --- Synthesis ---

    async def _synthesize(
        self,
        request: ContextRequest,
        immediate: Sequence[ImmediateMessage],
        long_term: LongTermContext,
        remaining: float,
    ) -> str:
        if not self._completion:
            return ""
        if not (
            long_term.relevant_memories
            or long_term.linked_documents
            or long_term.user_preferences
        ):
            return ""
        if remaining <= 0:
            logger.warning("No time left for context synthesis", conversation_id=request.conversation_id)
            return ""

        try:
            response = await asyncio.wait_for(
                self._completion.chat(
                    messages=[
                        {"role": "system", "content": SYNTHESIZE_SYSTEM},
                        {"role": "user", "content": self._synthesis_prompt(request, immediate, long_term)},
                    ],
                    max_tokens=250,
                    temperature=0.2,
                ),
                timeout=remaining,
            )
            return response.content.strip()
        except asyncio.TimeoutError:
            logger.warning("Context synthesis timed out", conversation_id=request.conversation_id)
            return ""
        except CompletionUnavailable as exc:
            logger.warning(
                "Context synthesis failed",
                conversation_id=request.conversation_id,
                error=str(exc),
            )
            return ""

    @staticmethod
    def _synthesis_prompt(
        request: ContextRequest,
        immediate: Sequence[ImmediateMessage],
        long_term: LongTermContext,
    ) -> str:
        sections: List[Tuple[str, str]] = []
        if immediate:
            sections.append(
                ("Recent exchange", "\n".join(f"{m.role}: {m.content[:500]}" for m in immediate))
            )
        if request.current_message_text:
            sections.append(("Current message", request.current_message_text[:1000]))
        if long_term.relevant_memories:
            sections.append(
                (
                    "Past conversations",
                    "\n".join(f"- {m.summary}" for m in long_term.relevant_memories),
                )
            )
        if long_term.linked_documents:
            sections.append(
                (
                    "Documents",
                    "\n".join(
                        f"- {d.document_id}: {d.summary}" for d in long_term.linked_documents
                    ),
                )
            )
        if long_term.user_preferences:
            sections.append(("Preferences", json.dumps(long_term.user_preferences)))
        return "\n\n".join(f"{title}:\n{body}" for title, body in sections)
