"""Read access to authored content chunks.

Chunks are owned by the authoring side; this service only reads them by
position. ``load_file`` is the one write path: it syncs the table from a YAML
catalog at startup.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from edu_agent.db import Database
from edu_agent.models import Chunk, MalformedRecord, chunk_from_row

logger = logging.getLogger(__name__)


class ChunkCatalog:
    def __init__(self, db: Database) -> None:
        self._db = db

    def count_active(self) -> int:
        row = self._db.fetch_one("SELECT COUNT(*) AS n FROM content_chunks WHERE active = 1")
        return int(row["n"]) if row else 0

    def get_by_index(self, index: int) -> Optional[Chunk]:
        row = self._db.fetch_one(
            """
            SELECT id, order_index, title, content, question
            FROM content_chunks
            WHERE active = 1 AND order_index = ?
            LIMIT 1
            """,
            (index,),
        )
        return chunk_from_row(row) if row else None

    def get_by_id(self, chunk_id: str) -> Optional[Chunk]:
        row = self._db.fetch_one(
            "SELECT id, order_index, title, content, question FROM content_chunks WHERE id = ?",
            (chunk_id,),
        )
        return chunk_from_row(row) if row else None

    def replace_active(self, items: List[Dict[str, Any]]) -> int:
        """Make ``items`` the active set, in order; order_index is reassigned 0..n-1.

        Chunks not listed are deactivated rather than deleted, since journal
        rows keep pointing at them.
        """
        seen: List[str] = []
        with self._db.connect() as conn:
            conn.execute("UPDATE content_chunks SET active = 0, updated_at = datetime('now')")
            for index, item in enumerate(items):
                chunk_id = str(item.get("id") or f"chunk-{index + 1}")
                content = str(item.get("content") or "").strip()
                question = str(item.get("question") or "").strip()
                if not content or not question:
                    raise MalformedRecord(f"chunk {chunk_id!r} needs both content and question")
                if chunk_id in seen:
                    raise MalformedRecord(f"duplicate chunk id {chunk_id!r}")
                seen.append(chunk_id)
                conn.execute(
                    """
                    INSERT INTO content_chunks (id, order_index, title, content, question, active)
                    VALUES (?, ?, ?, ?, ?, 1)
                    ON CONFLICT(id) DO UPDATE SET
                        order_index = excluded.order_index,
                        title = excluded.title,
                        content = excluded.content,
                        question = excluded.question,
                        active = 1,
                        updated_at = datetime('now')
                    """,
                    (chunk_id, index, str(item.get("title") or ""), content, question),
                )
        return len(seen)

    def load_file(self, path: Path) -> int:
        """Load a YAML list of ``{id, title, content, question}`` into the catalog."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if isinstance(data, dict):
            data = data.get("chunks")
        if not isinstance(data, list):
            raise MalformedRecord(f"chunk catalog must be a YAML list: {path}")
        count = self.replace_active([item for item in data if isinstance(item, dict)])
        logger.info("Chunk catalog loaded: %d active chunk(s) from %s", count, path)
        return count
