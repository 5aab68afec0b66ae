"""Chunk delivery state machine.

A session walks ``current_chunk_index`` from 0 to ``chunk_count``; reaching
``chunk_count`` is the same thing as ``completed``. Every move goes through a
compare-and-swap on the stored index, so two racing advances for one session
cannot both pass the same boundary; the loser gets ``StaleSessionError`` and
must re-read before deciding again.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from edu_agent.models import Chunk, Session
from edu_agent.services.chunk_catalog import ChunkCatalog
from edu_agent.services.session_store import ConversationSessionStore

logger = logging.getLogger(__name__)


class ChunkDeliveryEngine:
    def __init__(self, store: ConversationSessionStore, catalog: ChunkCatalog) -> None:
        self._store = store
        self._catalog = catalog

    def get_current_chunk(self, session: Session) -> Optional[Chunk]:
        if session.completed or session.current_chunk_index >= session.chunk_count:
            return None
        return self._catalog.get_by_index(session.current_chunk_index)

    def is_duplicate_turn(self, session: Session, turn_key: Optional[str]) -> bool:
        """True when ``turn_key`` already advanced this session (webhook redelivery)."""
        return bool(turn_key) and session.last_turn_key == turn_key

    def advance(
        self,
        session: Session,
        turn_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Move past the current chunk. Returns True iff another chunk follows.

        On the last chunk the session is marked completed (index becomes
        ``chunk_count``). Advancing an already completed session is a no-op
        returning False.
        """
        if session.completed or session.current_chunk_index >= session.chunk_count:
            logger.info("advance on completed session %s ignored", session.id)
            return False
        next_index = session.current_chunk_index + 1
        has_next = next_index < session.chunk_count
        self._store.compare_and_set(
            session,
            current_chunk_index=next_index,
            completed=not has_next,
            turn_key=turn_key,
            conn=conn,
        )
        logger.info(
            "Session %s advanced %d -> %d (completed=%s)",
            session.id, session.current_chunk_index, next_index, not has_next,
        )
        return has_next

    def finish(
        self,
        session: Session,
        turn_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Jump straight to completion; used when the catalog no longer has the current chunk."""
        if session.completed:
            return
        self._store.compare_and_set(
            session,
            current_chunk_index=session.chunk_count,
            completed=True,
            turn_key=turn_key,
            conn=conn,
        )
        logger.warning(
            "Session %s force-completed at index %d/%d",
            session.id, session.current_chunk_index, session.chunk_count,
        )

    def record_response(self, session_id: str, turn_key: Optional[str], text: str) -> None:
        if turn_key:
            self._store.remember_response(session_id, turn_key, text)
