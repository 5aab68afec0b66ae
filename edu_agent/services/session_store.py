"""Persisted session state: position, completion flag and per-session toggles."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Optional

from edu_agent.db import Database, StaleSessionError
from edu_agent.models import ConversationType, Session, session_from_row
from edu_agent.services.admin_config import AdminConfig
from edu_agent.services.chunk_catalog import ChunkCatalog

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = """
    id, conversation_type, chunk_count, current_chunk_index, completed,
    personalization_enabled, conversation_aware, last_turn_key, last_response,
    created_at, updated_at
"""


class ConversationSessionStore:
    def __init__(self, db: Database, catalog: ChunkCatalog, admin_config: AdminConfig) -> None:
        self._db = db
        self._catalog = catalog
        self._admin = admin_config

    def get(self, session_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Session]:
        if not session_id:
            return None
        with self._db.unit_of_work(conn) as c:
            row = c.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        return session_from_row(row) if row else None

    def create(
        self,
        session_id: Optional[str] = None,
        personalization_enabled: Optional[bool] = None,
        conversation_aware: Optional[bool] = None,
    ) -> Session:
        """Insert a new session; flags left unset fall back to the admin defaults.

        ``chunk_count`` is frozen here from the active catalog. An empty catalog
        yields a session that is complete from the start.
        """
        defaults = self._admin.get_defaults()
        sid = session_id or uuid.uuid4().hex
        chunk_count = self._catalog.count_active()
        conversation_type = (
            ConversationType.STRUCTURED
            if defaults.use_structured_conversation
            else ConversationType.OPEN_ENDED
        )
        personalization = (
            defaults.personalization_enabled if personalization_enabled is None else personalization_enabled
        )
        aware = defaults.conversation_aware if conversation_aware is None else conversation_aware
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO sessions (
                    id, conversation_type, chunk_count, current_chunk_index, completed,
                    personalization_enabled, conversation_aware, created_at, updated_at
                )
                VALUES (?, ?, ?, 0, ?, ?, ?, datetime('now'), datetime('now'))
                """,
                (
                    sid,
                    conversation_type.value,
                    chunk_count,
                    int(chunk_count == 0),
                    int(personalization),
                    int(aware),
                ),
            )
            session = self.get(sid, conn=conn)
        logger.info(
            "Session created: id=%s chunks=%d type=%s personalization=%s aware=%s",
            sid, chunk_count, conversation_type.value, personalization, aware,
        )
        return session

    def get_or_create(
        self,
        session_id: Optional[str] = None,
        personalization_enabled: Optional[bool] = None,
        conversation_aware: Optional[bool] = None,
    ) -> Session:
        if session_id:
            existing = self.get(session_id)
            if existing is not None:
                return existing
        return self.create(session_id, personalization_enabled, conversation_aware)

    def compare_and_set(
        self,
        session: Session,
        *,
        current_chunk_index: int,
        completed: bool,
        turn_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Move ``session`` to a new position iff the stored row still matches it.

        A new ``turn_key`` replaces the stored one and clears the cached
        response of the previous turn.
        """
        with self._db.unit_of_work(conn) as c:
            cur = c.execute(
                """
                UPDATE sessions
                SET current_chunk_index = ?,
                    completed = ?,
                    last_turn_key = COALESCE(?, last_turn_key),
                    last_response = CASE WHEN ? IS NULL THEN last_response ELSE NULL END,
                    updated_at = datetime('now')
                WHERE id = ? AND current_chunk_index = ? AND completed = ?
                """,
                (
                    current_chunk_index,
                    int(completed),
                    turn_key,
                    turn_key,
                    session.id,
                    session.current_chunk_index,
                    int(session.completed),
                ),
            )
            if cur.rowcount != 1:
                raise StaleSessionError(
                    f"session {session.id} moved away from index {session.current_chunk_index}"
                )

    def remember_response(self, session_id: str, turn_key: str, text: str) -> None:
        """Cache the composed reply for ``turn_key`` so a redelivery can replay it."""
        with self._db.connect() as conn:
            conn.execute(
                """
                UPDATE sessions
                SET last_response = ?, updated_at = datetime('now')
                WHERE id = ? AND last_turn_key = ?
                """,
                (text, session_id, turn_key),
            )
