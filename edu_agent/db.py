"""SQLite persistence for sessions, content chunks, the response journal and reports."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class PersistenceFailure(RuntimeError):
    """Raised when a read or write against the session database fails."""


class StaleSessionError(PersistenceFailure):
    """Compare-and-swap on a session row matched nothing: someone else moved it first."""


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        conversation_type TEXT NOT NULL DEFAULT 'structured',
        chunk_count INTEGER NOT NULL,
        current_chunk_index INTEGER NOT NULL DEFAULT 0,
        completed INTEGER NOT NULL DEFAULT 0,
        personalization_enabled INTEGER NOT NULL DEFAULT 0,
        conversation_aware INTEGER,
        last_turn_key TEXT,
        last_response TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_chunks (
        id TEXT PRIMARY KEY,
        order_index INTEGER NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL,
        question TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_progress (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        chunk_id TEXT NOT NULL,
        user_response TEXT NOT NULL,
        ai_response TEXT NOT NULL,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_session_progress_session ON session_progress(session_id, id)",
    """
    CREATE TABLE IF NOT EXISTS session_reports (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        report_path TEXT NOT NULL,
        generated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_settings (
        id TEXT PRIMARY KEY DEFAULT 'default',
        personalization_enabled INTEGER DEFAULT 0,
        conversation_aware INTEGER DEFAULT 1,
        use_structured_conversation INTEGER DEFAULT 1,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class Database:
    """Thin wrapper around one sqlite file.

    A new connection is opened per unit of work; ``connect()`` commits on a
    clean exit and rolls back otherwise, so several statements issued inside
    one ``with`` block land atomically.
    """

    def __init__(self, path: str) -> None:
        self.path = str(path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=5.0)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"cannot open database {self.path}: {exc}") from exc
        try:
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceFailure(str(exc)) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def unit_of_work(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction when ``conn`` is given, else open a new one."""
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            yield own

    def init_schema(self) -> None:
        """Create tables if they do not exist and seed the default admin row."""
        db_file = Path(self.path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)
            conn.execute("INSERT OR IGNORE INTO admin_settings (id) VALUES ('default')")
        logger.info("Database ready at %s", self.path)

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self.connect() as conn:
            return conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: tuple = ()) -> list:
        with self.connect() as conn:
            return conn.execute(sql, params).fetchall()
