"""Integration test: turns flowing through the memory engine."""

import asyncio

import pytest

from memory_engine.memory.manager import MemoryManager
from memory_engine.memory.models import ChatMessage, FinishedTurn

from tests.conftest import TEST_DIM, TopicEmbedder


@pytest.fixture
async def engine(db_manager, settings):
    manager = MemoryManager(db_manager=db_manager, embedder=TopicEmbedder(), settings=settings)
    await manager.start(run_sweeper=False)
    yield manager
    await manager.close()


def _turn(conversation_id, texts, user_id="u1", **overrides):
    roles = ["user", "assistant"]
    return FinishedTurn(
        user_id=user_id,
        conversation_id=conversation_id,
        messages=[ChatMessage(role=roles[i % 2], content=t) for i, t in enumerate(texts)],
        **overrides,
    )


class TestMemoryFlow:
    """End-to-end scenarios through MemoryManager."""

    async def test_scenario_a_single_conversation(self, engine):
        """Three messages, no documents: one embedded memory with messageCount 3."""
        await engine.finalize_turn(
            _turn(
                "C1",
                [
                    "Help me plan an algebra lesson.",
                    "Sure. Focus on linear equations first.",
                    "Great, let's do that.",
                ],
            )
        )

        memory = await engine.conversations.get("C1")

        assert memory.message_count == 3
        assert memory.summary
        assert len(memory.embedding) == TEST_DIM

    async def test_scenario_a_across_turns(self, engine):
        for text in ("First algebra question.", "Second algebra question.", "Third one."):
            await engine.finalize_turn(_turn("C1", [text]))

        assert (await engine.conversations.get("C1")).message_count == 3

    async def test_scenario_b_topic_recall(self, engine):
        """A biology query recalls the biology conversation and not the algebra one."""
        await engine.finalize_turn(
            _turn("C1", ["Explain quadratic equations in algebra.", "Factoring is the key step."])
        )
        await engine.finalize_turn(
            _turn("C2", ["Make a cell biology quiz.", "Here are questions on mitochondria."])
        )

        context = await engine.assemble_context(
            {
                "userId": "u1",
                "conversationId": "C9",
                "currentMessageText": "create another biology quiz",
                "recentMessages": [{"role": "user", "content": "create another biology quiz"}],
            }
        )
        response = context.to_response()

        recalled = [m["conversationId"] for m in response["longTerm"]["relevantMemories"]]
        assert recalled == ["C2"]
        assert response["longTerm"]["relevantMemories"][0]["similarity"] >= 0.7
        assert response["longTermDegraded"] is False

    async def test_scenario_c_document_referenced_twice(self, engine):
        """Two turns referencing one document link it once and count both accesses."""
        await engine.ingest_document("u1", "D1", "Photosynthesis worksheet text.")

        await engine.finalize_turn(_turn("C3", ["Use this worksheet."], document_ids=["D1"]))
        await engine.finalize_turn(_turn("C3", ["Use it again."], document_ids=["D1"]))

        document = await engine.documents.get("D1")
        assert document.conversation_ids == ["C3"]
        assert document.access_count >= 2

    async def test_linked_document_appears_in_context(self, engine):
        await engine.ingest_document("u1", "D1", "Cell diagram.", summary="Cell diagram notes")
        await engine.finalize_turn(_turn("C3", ["Look at this diagram."], document_ids=["D1"]))

        context = await engine.assemble_context(
            {"userId": "u1", "conversationId": "C3", "currentMessageText": "next"}
        )

        assert [d.document_id for d in context.long_term.linked_documents] == ["D1"]

    async def test_degraded_when_embedding_down(self, db_manager, settings):
        embedder = TopicEmbedder()
        engine = MemoryManager(db_manager=db_manager, embedder=embedder, settings=settings)
        await engine.start(run_sweeper=False)
        await engine.finalize_turn(_turn("C1", ["Algebra homework help."]))

        embedder.fail = True
        context = await engine.assemble_context(
            {
                "userId": "u1",
                "conversationId": "C2",
                "currentMessageText": "algebra again",
                "recentMessages": [{"role": "user", "content": "algebra again"}],
            }
        )

        assert context.long_term_degraded is True
        assert context.immediate
        await engine.close()

    async def test_pending_memory_recovered_by_sweep(self, db_manager, settings):
        embedder = TopicEmbedder(fail=True)
        engine = MemoryManager(db_manager=db_manager, embedder=embedder, settings=settings)
        await engine.start(run_sweeper=False)

        await engine.finalize_turn(_turn("C1", ["Algebra homework help."]))
        assert (await engine.conversations.get("C1")).pending_embedding is True

        embedder.fail = False
        assert await engine.sweep_pending() == 1

        hits = await engine.search_memories("u1", "algebra")
        assert [h.record.conversation_id for h in hits] == ["C1"]
        await engine.close()

    async def test_write_survives_cancelled_request(self, db_manager, settings):
        engine = MemoryManager(
            db_manager=db_manager, embedder=TopicEmbedder(delay=0.05), settings=settings
        )
        await engine.start(run_sweeper=False)

        request = asyncio.create_task(
            engine.finalize_turn_and_wait(_turn("C1", ["Algebra homework help."]))
        )
        await asyncio.sleep(0.01)
        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        await engine.close()

        assert (await engine.conversations.get("C1")) is not None
