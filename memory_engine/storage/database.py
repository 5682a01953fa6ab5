"""SQLite data-access layer for the memory store."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Tuple, Union

import aiosqlite
import structlog

from ..exceptions import StoreUnavailable

logger = structlog.get_logger()

# (version, statements) applied in order on initialize()
MIGRATIONS: List[Tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS conversation_memory (
            conversation_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            session_id TEXT,
            summary TEXT NOT NULL DEFAULT '',
            key_points TEXT NOT NULL DEFAULT '[]',
            decisions TEXT NOT NULL DEFAULT '[]',
            document_ids TEXT NOT NULL DEFAULT '[]',
            artifacts TEXT NOT NULL DEFAULT '[]',
            embedding BLOB,
            pending_embedding INTEGER NOT NULL DEFAULT 0,
            importance REAL NOT NULL DEFAULT 0.0,
            message_count INTEGER NOT NULL DEFAULT 0,
            access_count INTEGER NOT NULL DEFAULT 0,
            start_time TIMESTAMP,
            end_time TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_conversation_memory_user
            ON conversation_memory (user_id, end_time);
        CREATE INDEX IF NOT EXISTS idx_conversation_memory_pending
            ON conversation_memory (pending_embedding);

        CREATE TABLE IF NOT EXISTS document_memory (
            document_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT,
            full_content TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            key_topics TEXT NOT NULL DEFAULT '[]',
            structure TEXT NOT NULL DEFAULT '{}',
            embedding BLOB,
            pending_embedding INTEGER NOT NULL DEFAULT 0,
            conversation_ids TEXT NOT NULL DEFAULT '[]',
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TIMESTAMP,
            created_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_document_memory_user
            ON document_memory (user_id);
        CREATE INDEX IF NOT EXISTS idx_document_memory_pending
            ON document_memory (pending_embedding);

        CREATE TABLE IF NOT EXISTS user_preferences (
            user_id TEXT PRIMARY KEY,
            question_type_counts TEXT NOT NULL DEFAULT '{}',
            difficulty_bias REAL NOT NULL DEFAULT 0.0,
            language TEXT,
            communication_style TEXT,
            updated_at TIMESTAMP NOT NULL
        );

        CREATE TABLE IF NOT EXISTS session_state (
            session_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            active_document_ids TEXT NOT NULL DEFAULT '[]',
            current_plan_id TEXT,
            scratch TEXT NOT NULL DEFAULT '{}',
            expires_at TIMESTAMP NOT NULL,
            created_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_session_state_user
            ON session_state (user_id);
        """,
    ),
]


class DatabaseManager:
    """Owns the SQLite file and hands out connections.

    Each ``get_connection()`` opens its own connection so concurrent tasks
    never share a transaction. SQLite operational failures are surfaced as
    ``StoreUnavailable``.
    """

    def __init__(self, database_path: Union[str, Path], busy_timeout: float = 5.0) -> None:
        self.database_path = Path(database_path)
        self._busy_timeout = busy_timeout

    async def initialize(self) -> None:
        """Create the database file and apply pending migrations."""
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(str(exc)) from exc

        async with self.get_connection() as conn:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
            )
            cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
            row = await cursor.fetchone()
            current = row[0] or 0

            for version, script in MIGRATIONS:
                if version <= current:
                    continue
                await conn.executescript(script)
                await conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (version,)
                )
                logger.info("Applied migration", version=version)
            await conn.commit()

        logger.info("Database initialized", path=str(self.database_path))

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection with name-addressable rows."""
        try:
            conn = await aiosqlite.connect(
                self.database_path, timeout=self._busy_timeout
            )
        except (aiosqlite.OperationalError, OSError) as exc:
            raise StoreUnavailable(f"Cannot open database: {exc}") from exc

        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        except aiosqlite.OperationalError as exc:
            raise StoreUnavailable(str(exc)) from exc
        finally:
            await conn.close()

    async def close(self) -> None:
        """Release resources held by the manager."""
        logger.debug("Database manager closed", path=str(self.database_path))
