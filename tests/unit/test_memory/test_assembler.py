"""Tests for ContextAssembler."""

import asyncio
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from memory_engine.exceptions import CompletionUnavailable
from memory_engine.llm.chat_provider import ChatResponse
from memory_engine.memory.assembler import ContextAssembler
from memory_engine.memory.documents import DocumentRepository
from memory_engine.memory.models import (
    ChatMessage,
    ContextRequest,
    ConversationMemory,
    DocumentMemory,
    ImmediateMessage,
    LinkedDocument,
    LongTermContext,
    RelevantMemory,
    UserPreferences,
)
from memory_engine.memory.repository import ConversationRepository
from memory_engine.memory.search import SimilaritySearch
from memory_engine.memory.sessions import PreferenceRepository, SessionRepository

from tests.conftest import TEST_DIM, TopicEmbedder, topic_vector


class AssemblerHarness:
    """An assembler wired to real repositories on the test database."""

    def __init__(self, db_manager, embedder, completion=None, **options):
        self.conversations = ConversationRepository(db_manager, TEST_DIM)
        self.documents = DocumentRepository(db_manager, TEST_DIM)
        self.preferences = PreferenceRepository(db_manager)
        self.sessions = SessionRepository(db_manager)
        self.search = SimilaritySearch(self.conversations, self.documents)
        self.assembler = ContextAssembler(
            search=self.search,
            documents=self.documents,
            preferences=self.preferences,
            sessions=self.sessions,
            embedder=embedder,
            completion=completion,
            **options,
        )

    async def remember(self, conversation_id, summary, user_id="u1", importance=0.5):
        await self.conversations.upsert(
            ConversationMemory(
                user_id=user_id,
                conversation_id=conversation_id,
                summary=summary,
                embedding=topic_vector(summary),
                importance=importance,
                end_time=datetime.now(timezone.utc),
            )
        )


@pytest.fixture
def harness(db_manager, embedder):
    return AssemblerHarness(db_manager, embedder)


def _recent(n=2):
    roles = ["user", "assistant"]
    return [ChatMessage(role=roles[i % 2], content=f"message {i}") for i in range(n)]


def _request(**overrides) -> ContextRequest:
    fields = dict(
        user_id="u1",
        conversation_id="c1",
        current_message_text="another algebra quiz",
        recent_messages=_recent(),
    )
    fields.update(overrides)
    return ContextRequest(**fields)


def _chat_response(content):
    return ChatResponse(
        content=content, model="gpt-4o-mini", input_tokens=1, output_tokens=1, duration_ms=1
    )


class TestImmediateLayer:
    def test_last_k_messages(self, harness):
        messages = [ChatMessage(role="user", content=f"m{i}") for i in range(10)]

        immediate = harness.assembler.build_immediate(messages)

        assert [m.content for m in immediate] == ["m4", "m5", "m6", "m7", "m8", "m9"]

    def test_each_message_clipped(self, db_manager, embedder):
        harness = AssemblerHarness(db_manager, embedder, message_char_limit=10)

        immediate = harness.assembler.build_immediate([ChatMessage(role="user", content="x" * 50)])

        assert immediate[0].content == "x" * 10

    def test_hard_ceiling_drops_oldest(self, db_manager, embedder):
        harness = AssemblerHarness(
            db_manager, embedder, message_char_limit=100, immediate_hard_char_limit=250
        )
        messages = [ChatMessage(role="user", content=str(i) * 100) for i in range(4)]

        immediate = harness.assembler.build_immediate(messages)

        assert [m.content[0] for m in immediate] == ["2", "3"]


class TestAssemble:
    """Tests for the full read path."""

    async def test_relevant_memories_retrieved(self, harness):
        await harness.remember("c2", "Discussed: algebra equations.")
        await harness.remember("c3", "Discussed: cell biology.")

        context = await harness.assembler.assemble(_request())

        assert [m.conversation_id for m in context.long_term.relevant_memories] == ["c2"]
        assert context.long_term.relevant_memories[0].similarity == pytest.approx(1.0)
        assert context.long_term_degraded is False
        assert len(context.immediate) == 2

    async def test_current_conversation_deduplicated(self, harness):
        """A memory of the conversation already in Immediate is not repeated."""
        await harness.remember("c1", "Discussed: algebra factoring.")
        await harness.remember("c2", "Discussed: algebra equations.")

        context = await harness.assembler.assemble(_request(conversation_id="c1"))

        ids = [m.conversation_id for m in context.long_term.relevant_memories]
        assert "c1" not in ids
        assert ids == ["c2"]

    async def test_current_conversation_does_not_cost_a_result_slot(self, harness):
        """With N=1 the single slot goes to another conversation."""
        harness.search.limit = 1
        await harness.remember("c1", "algebra algebra equations")
        await harness.remember("c2", "algebra biology")

        context = await harness.assembler.assemble(
            _request(conversation_id="c1", current_message_text="algebra equations")
        )
        await harness.search.drain()

        assert [m.conversation_id for m in context.long_term.relevant_memories] == ["c2"]
        assert (await harness.conversations.get("c1")).access_count == 0

    async def test_current_conversation_kept_without_immediate(self, harness):
        await harness.remember("c1", "Discussed: algebra factoring.")

        context = await harness.assembler.assemble(_request(recent_messages=[]))

        assert [m.conversation_id for m in context.long_term.relevant_memories] == ["c1"]

    async def test_embedding_failure_degrades(self, db_manager):
        """Embedding outage still yields immediate and preferences, flagged degraded."""
        harness = AssemblerHarness(db_manager, TopicEmbedder(fail=True), read_timeout=2.0)
        await harness.remember("c2", "Discussed: algebra equations.")
        await harness.preferences.upsert(UserPreferences(user_id="u1", language="english"))

        started = time.monotonic()
        context = await harness.assembler.assemble(_request())

        assert time.monotonic() - started < 2.0
        assert context.long_term_degraded is True
        assert context.immediate
        assert context.long_term.relevant_memories == []
        assert context.long_term.user_preferences["language"] == "english"

    async def test_read_timeout_bounds_assembly(self, db_manager):
        harness = AssemblerHarness(db_manager, TopicEmbedder(delay=5.0), read_timeout=0.2)

        started = time.monotonic()
        context = await harness.assembler.assemble(_request())

        assert time.monotonic() - started < 1.0
        assert context.long_term_degraded is True
        assert [m.content for m in context.immediate] == ["message 0", "message 1"]

    async def test_memory_disabled(self, db_manager):
        embedder = TopicEmbedder()
        harness = AssemblerHarness(db_manager, embedder)
        await harness.remember("c2", "Discussed: algebra equations.")

        context = await harness.assembler.assemble(_request(enable_memory=False))

        assert context.long_term.relevant_memories == []
        assert context.long_term_degraded is False
        assert embedder.calls == []

    async def test_empty_query_skips_search(self, db_manager):
        embedder = TopicEmbedder()
        harness = AssemblerHarness(db_manager, embedder)

        context = await harness.assembler.assemble(_request(current_message_text="  "))

        assert embedder.calls == []
        assert context.long_term_degraded is False

    async def test_depth_limits_search(self, harness):
        await harness.conversations.upsert(
            ConversationMemory(
                user_id="u1",
                conversation_id="old",
                summary="algebra",
                embedding=topic_vector("algebra"),
                end_time=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        )

        context = await harness.assembler.assemble(_request(memory_depth_days=7))

        assert context.long_term.relevant_memories == []

    async def test_documents_from_request_session_and_links(self, harness):
        for doc_id in ("attached", "active", "linked", "unrelated"):
            await harness.documents.upsert(
                DocumentMemory(
                    document_id=doc_id, user_id="u1", full_content=doc_id, summary=f"{doc_id} doc"
                )
            )
        await harness.sessions.start("u1", "s1", ["active"])
        await harness.documents.append_conversation("linked", "c1", "u1")

        context = await harness.assembler.assemble(
            _request(session_id="s1", attached_document_ids=["attached"])
        )

        ids = [d.document_id for d in context.long_term.linked_documents]
        assert ids == ["attached", "active", "linked"]
        assert (await harness.documents.get("attached")).access_count == 1
        assert (await harness.documents.get("unrelated")).access_count == 0

    async def test_other_users_documents_ignored(self, harness):
        await harness.documents.upsert(
            DocumentMemory(document_id="d1", user_id="u2", full_content="secret")
        )

        context = await harness.assembler.assemble(_request(attached_document_ids=["d1"]))

        assert context.long_term.linked_documents == []

    async def test_cancellation_propagates(self, db_manager):
        harness = AssemblerHarness(db_manager, TopicEmbedder(delay=5.0), read_timeout=10.0)

        task = asyncio.create_task(harness.assembler.assemble(_request()))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestTokenBudget:
    def _long_term(self, memories=5, documents=2):
        return LongTermContext(
            relevant_memories=[
                RelevantMemory(
                    conversation_id=f"c{i}", summary="s" * 400, similarity=0.9, importance=0.5
                )
                for i in range(memories)
            ],
            linked_documents=[
                LinkedDocument(document_id=f"d{i}", summary="d" * 400) for i in range(documents)
            ],
        )

    def test_within_budget_untouched(self, harness):
        long_term = self._long_term()
        assert harness.assembler.fit_budget([], long_term) == 0
        assert len(long_term.relevant_memories) == 5

    def test_lowest_ranked_memories_dropped_first(self, db_manager, embedder):
        harness = AssemblerHarness(db_manager, embedder, token_budget=500)
        long_term = self._long_term()

        dropped = harness.assembler.fit_budget([], long_term)

        assert dropped > 0
        assert [m.conversation_id for m in long_term.relevant_memories] == ["c0", "c1", "c2"][
            : len(long_term.relevant_memories)
        ]
        assert len(long_term.linked_documents) == 2
        assert harness.assembler.estimate_tokens([], long_term) <= 500

    def test_documents_dropped_after_memories(self, db_manager, embedder):
        harness = AssemblerHarness(db_manager, embedder, token_budget=150)
        long_term = self._long_term()

        harness.assembler.fit_budget([], long_term)

        assert long_term.relevant_memories == []
        assert [d.document_id for d in long_term.linked_documents] == ["d0"]

    def test_immediate_never_trimmed(self, db_manager, embedder):
        harness = AssemblerHarness(db_manager, embedder, token_budget=10)
        immediate = [ImmediateMessage(role="user", content="x" * 1000)]
        long_term = self._long_term()

        harness.assembler.fit_budget(immediate, long_term)

        assert len(immediate) == 1
        assert long_term.relevant_memories == []
        assert long_term.linked_documents == []


class TestSynthesis:
    async def test_digest_from_completion_model(self, db_manager, embedder):
        completion = MagicMock()
        completion.chat = AsyncMock(return_value=_chat_response(" The user studies algebra. "))
        harness = AssemblerHarness(db_manager, embedder, completion=completion)
        await harness.remember("c2", "Discussed: algebra equations.")

        context = await harness.assembler.assemble(_request())

        assert context.synthesized_summary == "The user studies algebra."
        prompt = completion.chat.await_args.kwargs["messages"][1]["content"]
        assert "Discussed: algebra equations." in prompt
        assert "another algebra quiz" in prompt

    async def test_no_long_term_skips_model(self, db_manager, embedder):
        completion = MagicMock()
        completion.chat = AsyncMock()
        harness = AssemblerHarness(db_manager, embedder, completion=completion)

        context = await harness.assembler.assemble(_request())

        assert context.synthesized_summary == ""
        completion.chat.assert_not_awaited()

    async def test_model_failure_yields_empty_digest(self, db_manager, embedder):
        completion = MagicMock()
        completion.chat = AsyncMock(side_effect=CompletionUnavailable("provider down"))
        harness = AssemblerHarness(db_manager, embedder, completion=completion)
        await harness.remember("c2", "Discussed: algebra equations.")

        context = await harness.assembler.assemble(_request())

        assert context.synthesized_summary == ""
        assert context.long_term_degraded is False
        assert len(context.long_term.relevant_memories) == 1
