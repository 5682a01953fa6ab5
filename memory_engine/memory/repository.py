"""Repository for conversation memory records."""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence

import structlog

from ..exceptions import InvalidRecord
from ..storage.database import DatabaseManager
from ..storage.locks import KeyedLock
from ..storage.vectors import encode_embedding
from .models import ConversationMemory, to_iso, utcnow

logger = structlog.get_logger()


class ConversationRepository:
    """Conversation memory data access.

    Writes for the same conversation id must go through ``lock()`` so the
    read-merge-upsert sequence of the writer never loses an update.
    """

    def __init__(self, db_manager: DatabaseManager, embedding_dim: int):
        """Initialize repository."""
        self.db = db_manager
        self.embedding_dim = embedding_dim
        self._locks = KeyedLock()

    @asynccontextmanager
    async def lock(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize writes for one conversation id."""
        async with self._locks.hold(conversation_id):
            yield

    def validate(self, memory: ConversationMemory) -> None:
        """Reject records that must never be persisted.

        Raises:
            InvalidRecord: On a wrong embedding length or missing identity.
        """
        if not memory.conversation_id or not memory.user_id:
            raise InvalidRecord("missing user or conversation id", memory.conversation_id)
        if memory.embedding is not None and len(memory.embedding) != self.embedding_dim:
            raise InvalidRecord(
                f"embedding has {len(memory.embedding)} dimensions, "
                f"expected {self.embedding_dim}",
                memory.conversation_id,
            )

    async def upsert(self, memory: ConversationMemory) -> None:
        """Insert a memory, or replace the content of an existing one.

        ``access_count`` and ``created_at`` of an existing row are kept.

        Raises:
            InvalidRecord: If the record is malformed or the conversation
                belongs to another user.
        """
        self.validate(memory)
        now = utcnow()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO conversation_memory (
                    conversation_id, user_id, session_id, summary,
                    key_points, decisions, document_ids, artifacts,
                    embedding, pending_embedding, importance, message_count,
                    access_count, start_time, end_time, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    session_id = excluded.session_id,
                    summary = excluded.summary,
                    key_points = excluded.key_points,
                    decisions = excluded.decisions,
                    document_ids = excluded.document_ids,
                    artifacts = excluded.artifacts,
                    embedding = excluded.embedding,
                    pending_embedding = excluded.pending_embedding,
                    importance = excluded.importance,
                    message_count = excluded.message_count,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    updated_at = excluded.updated_at
                WHERE conversation_memory.user_id = excluded.user_id
                """,
                (
                    memory.conversation_id,
                    memory.user_id,
                    memory.session_id,
                    memory.summary,
                    json.dumps(memory.key_points),
                    json.dumps(memory.decisions),
                    json.dumps(memory.document_ids),
                    json.dumps([a.model_dump() for a in memory.artifacts]),
                    encode_embedding(memory.embedding),
                    int(memory.pending_embedding),
                    memory.importance,
                    memory.message_count,
                    memory.access_count,
                    to_iso(memory.start_time),
                    to_iso(memory.end_time),
                    to_iso(memory.created_at),
                    to_iso(now),
                ),
            )
            if cursor.rowcount == 0:
                raise InvalidRecord(
                    "conversation belongs to another user", memory.conversation_id
                )
            await conn.commit()

        logger.debug(
            "Upserted conversation memory",
            conversation_id=memory.conversation_id,
            pending_embedding=memory.pending_embedding,
        )

    async def get(self, conversation_id: str) -> Optional[ConversationMemory]:
        """Get a memory by conversation id."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM conversation_memory WHERE conversation_id = ?",
                (conversation_id,),
            )
            row = await cursor.fetchone()
            return ConversationMemory.from_row(row) if row else None

    async def list_recent(self, user_id: str, limit: int = 10) -> List[ConversationMemory]:
        """Most recently ended memories of a user."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM conversation_memory
                WHERE user_id = ?
                ORDER BY end_time DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = await cursor.fetchall()
            return [ConversationMemory.from_row(row) for row in rows]

    async def search_candidates(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        exclude_conversation_id: Optional[str] = None,
    ) -> List[ConversationMemory]:
        """Embedded memories of a user, optionally ended after ``since``."""
        query = (
            "SELECT * FROM conversation_memory "
            "WHERE user_id = ? AND embedding IS NOT NULL"
        )
        params: list[object] = [user_id]
        if since is not None:
            query += " AND (end_time IS NULL OR end_time >= ?)"
            params.append(to_iso(since))
        if exclude_conversation_id is not None:
            query += " AND conversation_id != ?"
            params.append(exclude_conversation_id)

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [ConversationMemory.from_row(row) for row in rows]

    async def increment_access(self, conversation_ids: Sequence[str]) -> None:
        """Bump access counters; best effort."""
        if not conversation_ids:
            return
        placeholders = ", ".join("?" for _ in conversation_ids)
        async with self.db.get_connection() as conn:
            await conn.execute(
                f"UPDATE conversation_memory SET access_count = access_count + 1 "
                f"WHERE conversation_id IN ({placeholders})",
                list(conversation_ids),
            )
            await conn.commit()

    async def list_pending(self, limit: int = 50) -> List[ConversationMemory]:
        """Memories persisted without an embedding."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM conversation_memory
                WHERE pending_embedding = 1
                ORDER BY updated_at
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
            return [ConversationMemory.from_row(row) for row in rows]

    async def set_embedding(self, conversation_id: str, embedding: List[float]) -> None:
        """Store a late embedding and clear the pending flag.

        Raises:
            InvalidRecord: On a wrong embedding length.
        """
        if len(embedding) != self.embedding_dim:
            raise InvalidRecord(
                f"embedding has {len(embedding)} dimensions, "
                f"expected {self.embedding_dim}",
                conversation_id,
            )
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                UPDATE conversation_memory
                SET embedding = ?, pending_embedding = 0
                WHERE conversation_id = ?
                """,
                (encode_embedding(embedding), conversation_id),
            )
            await conn.commit()
