"""Tests for SimilaritySearch."""

from datetime import datetime, timedelta, timezone

import pytest

from memory_engine.memory.documents import DocumentRepository
from memory_engine.memory.models import ConversationMemory, DocumentMemory
from memory_engine.memory.repository import ConversationRepository
from memory_engine.memory.search import RecordKind, SimilaritySearch

from tests.conftest import TEST_DIM


def _vec(*head: float) -> list:
    return list(head) + [0.0] * (TEST_DIM - len(head))


@pytest.fixture
def conversations(db_manager):
    return ConversationRepository(db_manager, TEST_DIM)


@pytest.fixture
def documents(db_manager):
    return DocumentRepository(db_manager, TEST_DIM)


@pytest.fixture
def search(conversations, documents):
    return SimilaritySearch(conversations, documents, threshold=0.7, limit=10)


async def _store(conversations, conversation_id, embedding, **overrides):
    fields = dict(
        user_id="u1",
        conversation_id=conversation_id,
        summary=f"summary of {conversation_id}",
        embedding=embedding,
        pending_embedding=embedding is None,
        end_time=datetime.now(timezone.utc),
    )
    fields.update(overrides)
    await conversations.upsert(ConversationMemory(**fields))


class TestSimilaritySearch:
    """Tests for thresholding, ordering and scoping."""

    async def test_threshold_invariant(self, search, conversations):
        """Every returned record meets the threshold; nothing below it is returned."""
        await _store(conversations, "same", _vec(1.0, 0.0))
        await _store(conversations, "close", _vec(1.0, 1.0))  # ~0.707
        await _store(conversations, "far", _vec(1.0, 2.0))  # ~0.447
        await _store(conversations, "orthogonal", _vec(0.0, 1.0))

        hits = await search.search(_vec(1.0, 0.0), "u1")

        assert [h.record.conversation_id for h in hits] == ["same", "close"]
        assert all(h.similarity >= 0.7 for h in hits)

    async def test_no_match_returns_empty_list(self, search, conversations):
        await _store(conversations, "orthogonal", _vec(0.0, 1.0))
        assert await search.search(_vec(1.0, 0.0), "u1") == []

    async def test_missing_embedding_never_candidate(self, search, conversations):
        await _store(conversations, "pending", None)
        assert await search.search(_vec(1.0), "u1", threshold=0.0) == []

    async def test_scoped_to_owner(self, search, conversations):
        await _store(conversations, "mine", _vec(1.0))
        await _store(conversations, "theirs", _vec(1.0), user_id="u2")

        hits = await search.search(_vec(1.0), "u1")

        assert [h.record.conversation_id for h in hits] == ["mine"]

    async def test_ties_broken_by_importance_then_recency(self, search, conversations):
        now = datetime.now(timezone.utc)
        await _store(conversations, "low", _vec(1.0), importance=0.2, end_time=now)
        await _store(
            conversations, "high-old", _vec(1.0), importance=0.8, end_time=now - timedelta(hours=2)
        )
        await _store(conversations, "high-new", _vec(1.0), importance=0.8, end_time=now)

        hits = await search.search(_vec(1.0), "u1")

        assert [h.record.conversation_id for h in hits] == ["high-new", "high-old", "low"]

    async def test_similarity_is_primary_key(self, search, conversations):
        await _store(conversations, "important", _vec(1.0, 0.5), importance=1.0)
        await _store(conversations, "similar", _vec(1.0), importance=0.0)

        hits = await search.search(_vec(1.0), "u1")

        assert hits[0].record.conversation_id == "similar"

    async def test_limit(self, search, conversations):
        for i in range(5):
            await _store(conversations, f"c{i}", _vec(1.0))

        assert len(await search.search(_vec(1.0), "u1", limit=3)) == 3

    async def test_excluded_conversation_does_not_take_a_slot(self, search, conversations):
        await _store(conversations, "current", _vec(1.0))
        await _store(conversations, "other", _vec(1.0, 1.0))

        hits = await search.search(_vec(1.0), "u1", limit=1, exclude_conversation_id="current")
        await search.drain()

        assert [h.record.conversation_id for h in hits] == ["other"]
        assert (await conversations.get("current")).access_count == 0

    async def test_since_excludes_old_conversations(self, search, conversations):
        old = datetime.now(timezone.utc) - timedelta(days=90)
        await _store(conversations, "old", _vec(1.0), end_time=old)

        since = datetime.now(timezone.utc) - timedelta(days=30)
        assert await search.search(_vec(1.0), "u1", since=since) == []

    async def test_access_count_incremented_for_returned_records(self, search, conversations):
        await _store(conversations, "hit", _vec(1.0))
        await _store(conversations, "miss", _vec(0.0, 1.0))

        await search.search(_vec(1.0), "u1")
        await search.drain()

        assert (await conversations.get("hit")).access_count == 1
        assert (await conversations.get("miss")).access_count == 0

    async def test_document_search(self, search, documents):
        await documents.upsert(
            DocumentMemory(document_id="d1", user_id="u1", full_content="x", embedding=_vec(0.0, 1.0))
        )
        await documents.upsert(
            DocumentMemory(document_id="d2", user_id="u1", full_content="y", embedding=_vec(1.0))
        )

        hits = await search.search(_vec(0.0, 1.0), "u1", kind=RecordKind.DOCUMENT)
        await search.drain()

        assert [h.record.document_id for h in hits] == ["d1"]
        assert (await documents.get("d1")).access_count == 1
