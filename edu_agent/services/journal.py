"""Append-only journal of (chunk, user reply, assistant reply) exchanges."""

from __future__ import annotations

import sqlite3
from typing import List, Optional

from edu_agent.db import Database
from edu_agent.models import ResponseRecord, response_from_row


class ResponseJournal:
    """Write-once log; there is deliberately no update or delete path."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        session_id: str,
        chunk_id: str,
        user_reply: str,
        assistant_reply: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        if not (session_id or "").strip():
            raise ValueError("session_id 不能为空")
        if not (chunk_id or "").strip():
            raise ValueError("chunk_id 不能为空")
        with self._db.unit_of_work(conn) as c:
            cur = c.execute(
                """
                INSERT INTO session_progress (session_id, chunk_id, user_response, ai_response, timestamp)
                VALUES (?, ?, ?, ?, datetime('now'))
                """,
                (session_id, chunk_id, user_reply or "", assistant_reply or ""),
            )
            return int(cur.lastrowid)

    def get_all(self, session_id: str) -> List[ResponseRecord]:
        rows = self._db.fetch_all(
            """
            SELECT id, session_id, chunk_id, user_response, ai_response, timestamp
            FROM session_progress
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        )
        return [response_from_row(r) for r in rows]
