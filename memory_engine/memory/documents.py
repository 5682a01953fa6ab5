"""Repository for document memory records."""

import json
from typing import List, Optional, Sequence

import aiosqlite
import structlog

from ..exceptions import InvalidRecord, LinkConflict
from ..storage.database import DatabaseManager
from ..storage.vectors import encode_embedding
from .models import DocumentMemory, to_iso, utcnow

logger = structlog.get_logger()

_LOCK_MARKERS = ("locked", "busy")


class DocumentRepository:
    """Document memory data access."""

    def __init__(self, db_manager: DatabaseManager, embedding_dim: int):
        """Initialize repository."""
        self.db = db_manager
        self.embedding_dim = embedding_dim

    def validate(self, document: DocumentMemory) -> None:
        """Raise ``InvalidRecord`` for documents that must not be stored."""
        if not document.document_id or not document.user_id:
            raise InvalidRecord("missing user or document id", document.document_id)
        if document.embedding is not None and len(document.embedding) != self.embedding_dim:
            raise InvalidRecord(
                f"embedding has {len(document.embedding)} dimensions, "
                f"expected {self.embedding_dim}",
                document.document_id,
            )

    async def upsert(self, document: DocumentMemory) -> None:
        """Insert a document or replace its content.

        Links, access counters and ``created_at`` of an existing row are
        left alone. ``full_content`` is written as-is.
        """
        self.validate(document)

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO document_memory (
                    document_id, user_id, title, full_content, summary,
                    key_topics, structure, embedding, pending_embedding,
                    conversation_ids, access_count, last_accessed, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    title = excluded.title,
                    full_content = excluded.full_content,
                    summary = excluded.summary,
                    key_topics = excluded.key_topics,
                    structure = excluded.structure,
                    embedding = excluded.embedding,
                    pending_embedding = excluded.pending_embedding
                WHERE document_memory.user_id = excluded.user_id
                """,
                (
                    document.document_id,
                    document.user_id,
                    document.title,
                    document.full_content,
                    document.summary,
                    json.dumps(document.key_topics),
                    json.dumps(document.structure),
                    encode_embedding(document.embedding),
                    int(document.pending_embedding),
                    json.dumps(list(dict.fromkeys(document.conversation_ids))),
                    document.access_count,
                    to_iso(document.last_accessed),
                    to_iso(document.created_at),
                ),
            )
            if cursor.rowcount == 0:
                raise InvalidRecord("document belongs to another user", document.document_id)
            await conn.commit()

        logger.info(
            "Stored document memory",
            document_id=document.document_id,
            content_length=len(document.full_content),
        )

    async def get(
        self, document_id: str, user_id: Optional[str] = None
    ) -> Optional[DocumentMemory]:
        """Get a document by id, optionally restricted to its owner."""
        query = "SELECT * FROM document_memory WHERE document_id = ?"
        params: list[object] = [document_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            return DocumentMemory.from_row(row) if row else None

    async def get_many(
        self, user_id: str, document_ids: Sequence[str]
    ) -> List[DocumentMemory]:
        """Owned documents among ``document_ids``, in the order requested."""
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM document_memory "
                f"WHERE user_id = ? AND document_id IN ({placeholders})",
                [user_id, *ids],
            )
            rows = await cursor.fetchall()

        by_id = {row["document_id"]: DocumentMemory.from_row(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    async def touch(self, document_ids: Sequence[str]) -> None:
        """Record a read: bump access counters and ``last_accessed``."""
        if not document_ids:
            return
        placeholders = ", ".join("?" for _ in document_ids)
        async with self.db.get_connection() as conn:
            await conn.execute(
                f"UPDATE document_memory "
                f"SET access_count = access_count + 1, last_accessed = ? "
                f"WHERE document_id IN ({placeholders})",
                [to_iso(utcnow()), *document_ids],
            )
            await conn.commit()

    async def append_conversation(
        self, document_id: str, conversation_id: str, user_id: str
    ) -> bool:
        """Atomically append ``conversation_id`` if absent and record the access.

        The append and the membership check happen in one UPDATE statement,
        so concurrent callers cannot drop each other's ids.

        Returns:
            True if the document exists for ``user_id``, False otherwise.

        Raises:
            LinkConflict: If the database was locked by a concurrent writer.
        """
        now = to_iso(utcnow())
        async with self.db.get_connection() as conn:
            try:
                cursor = await conn.execute(
                    """
                    UPDATE document_memory
                    SET conversation_ids = json_insert(conversation_ids, '$[#]', ?),
                        access_count = access_count + 1,
                        last_accessed = ?
                    WHERE document_id = ? AND user_id = ?
                      AND NOT EXISTS (
                          SELECT 1 FROM json_each(document_memory.conversation_ids)
                          WHERE json_each.value = ?
                      )
                    """,
                    (conversation_id, now, document_id, user_id, conversation_id),
                )
                appended = cursor.rowcount > 0
                if not appended:
                    cursor = await conn.execute(
                        """
                        UPDATE document_memory
                        SET access_count = access_count + 1, last_accessed = ?
                        WHERE document_id = ? AND user_id = ?
                        """,
                        (now, document_id, user_id),
                    )
                found = appended or cursor.rowcount > 0
                await conn.commit()
            except aiosqlite.OperationalError as exc:
                if any(marker in str(exc).lower() for marker in _LOCK_MARKERS):
                    raise LinkConflict(document_id, conversation_id) from exc
                raise

        if found:
            logger.debug(
                "Linked document to conversation",
                document_id=document_id,
                conversation_id=conversation_id,
                appended=appended,
            )
        return found

    async def list_for_conversation(
        self, user_id: str, conversation_id: str
    ) -> List[DocumentMemory]:
        """Documents that a conversation has referenced."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM document_memory
                WHERE user_id = ?
                  AND EXISTS (
                      SELECT 1 FROM json_each(document_memory.conversation_ids)
                      WHERE json_each.value = ?
                  )
                ORDER BY last_accessed DESC
                """,
                (user_id, conversation_id),
            )
            rows = await cursor.fetchall()
            return [DocumentMemory.from_row(row) for row in rows]

    async def search_candidates(self, user_id: str) -> List[DocumentMemory]:
        """Embedded documents of a user."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM document_memory "
                "WHERE user_id = ? AND embedding IS NOT NULL",
                (user_id,),
            )
            rows = await cursor.fetchall()
            return [DocumentMemory.from_row(row) for row in rows]

    async def increment_access(self, document_ids: Sequence[str]) -> None:
        """Alias used by similarity search for returned records."""
        await self.touch(document_ids)

    async def list_pending(self, limit: int = 50) -> List[DocumentMemory]:
        """Documents stored without an embedding."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM document_memory
                WHERE pending_embedding = 1
                ORDER BY created_at
                LIMIT ?
                """,
                (limit,),
            )
            rows = await cursor.fetchall()
            return [DocumentMemory.from_row(row) for row in rows]

    async def set_embedding(self, document_id: str, embedding: List[float]) -> None:
        """Store a late embedding and clear the pending flag."""
        if len(embedding) != self.embedding_dim:
            raise InvalidRecord(
                f"embedding has {len(embedding)} dimensions, "
                f"expected {self.embedding_dim}",
                document_id,
            )
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                UPDATE document_memory
                SET embedding = ?, pending_embedding = 0
                WHERE document_id = ?
                """,
                (encode_embedding(embedding), document_id),
            )
            await conn.commit()

    async def clear_pending(self, document_id: str) -> None:
        """Drop the pending flag of a document that has nothing to embed."""
        async with self.db.get_connection() as conn:
            await conn.execute(
                "UPDATE document_memory SET pending_embedding = 0 WHERE document_id = ?",
                (document_id,),
            )
            await conn.commit()
