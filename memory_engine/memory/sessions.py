"""Repositories for user preferences and live session state."""

import json
from datetime import timedelta
from typing import List, Optional

import structlog

from ..storage.database import DatabaseManager
from .models import SessionState, UserPreferences, to_iso, utcnow

logger = structlog.get_logger()


class PreferenceRepository:
    """User preference data access (one row per user)."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def get(self, user_id: str) -> Optional[UserPreferences]:
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM user_preferences WHERE user_id = ?", (user_id,)
            )
            row = await cursor.fetchone()
            return UserPreferences.from_row(row) if row else None

    async def upsert(self, preferences: UserPreferences) -> None:
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO user_preferences (
                    user_id, question_type_counts, difficulty_bias,
                    language, communication_style, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    question_type_counts = excluded.question_type_counts,
                    difficulty_bias = excluded.difficulty_bias,
                    language = excluded.language,
                    communication_style = excluded.communication_style,
                    updated_at = excluded.updated_at
                """,
                (
                    preferences.user_id,
                    json.dumps(preferences.question_type_counts),
                    preferences.difficulty_bias,
                    preferences.language,
                    preferences.communication_style,
                    to_iso(utcnow()),
                ),
            )
            await conn.commit()


class SessionRepository:
    """Session state data access.

    Expired rows are never returned. Starting a session removes every other
    session of the same user.
    """

    def __init__(self, db_manager: DatabaseManager, ttl_minutes: int = 120):
        self.db = db_manager
        self.ttl = timedelta(minutes=ttl_minutes)

    async def start(
        self,
        user_id: str,
        session_id: str,
        active_document_ids: Optional[List[str]] = None,
    ) -> SessionState:
        """Begin a new session, superseding earlier ones of the user."""
        now = utcnow()
        session = SessionState(
            session_id=session_id,
            user_id=user_id,
            active_document_ids=list(dict.fromkeys(active_document_ids or [])),
            expires_at=now + self.ttl,
            created_at=now,
        )
        async with self.db.get_connection() as conn:
            await conn.execute(
                "DELETE FROM session_state WHERE user_id = ? AND session_id != ?",
                (user_id, session_id),
            )
            await conn.commit()
        await self.save(session)
        logger.info("Session started", user_id=user_id, session_id=session_id)
        return session

    async def get(self, session_id: str, user_id: str) -> Optional[SessionState]:
        """Live session owned by ``user_id``, or None if absent or expired."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM session_state WHERE session_id = ? AND user_id = ?",
                (session_id, user_id),
            )
            row = await cursor.fetchone()

        if not row:
            return None
        session = SessionState.from_row(row)
        if session.is_expired():
            return None
        return session

    async def save(self, session: SessionState) -> None:
        async with self.db.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO session_state (
                    session_id, user_id, active_document_ids, current_plan_id,
                    scratch, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    active_document_ids = excluded.active_document_ids,
                    current_plan_id = excluded.current_plan_id,
                    scratch = excluded.scratch,
                    expires_at = excluded.expires_at
                """,
                (
                    session.session_id,
                    session.user_id,
                    json.dumps(session.active_document_ids),
                    session.current_plan_id,
                    json.dumps(session.scratch),
                    to_iso(session.expires_at),
                    to_iso(session.created_at),
                ),
            )
            await conn.commit()

    async def purge_expired(self) -> int:
        """Delete expired sessions; returns how many were removed."""
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM session_state WHERE expires_at <= ?",
                (to_iso(utcnow()),),
            )
            await conn.commit()
            return cursor.rowcount
