"""Session report generator.

根据 journal 生成 Markdown 报告，写入 reports 目录并登记到 session_reports。
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from edu_agent.db import Database, PersistenceFailure
from edu_agent.models import ReportResult, ResponseRecord
from edu_agent.services.chunk_catalog import ChunkCatalog
from edu_agent.utils.text import sanitize_text

logger = logging.getLogger(__name__)

_SAFE_DIR_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ReportGenerationError(RuntimeError):
    """Raised when a report cannot be rendered, written or registered."""


def report_dir_name(session_id: str) -> str:
    """Directory name for a session's reports.

    Session ids come from callers (front end, platform headers, registry file),
    so anything outside [A-Za-z0-9_-] is replaced by its sha256.
    """
    if _SAFE_DIR_RE.match(session_id):
        return session_id
    return "s-" + hashlib.sha256(session_id.encode("utf-8")).hexdigest()


def render_report(
    session_id: str,
    journal: Sequence[ResponseRecord],
    chunk_titles: Dict[str, Dict[str, str]],
    generated_at: str,
) -> str:
    md = f"""# Session Report

- Session: {session_id}
- Generated: {generated_at}
- Exchanges: {len(journal)}

---
"""
    if not journal:
        return md + "\n_No responses were recorded for this session._\n"
    for i, rec in enumerate(journal, start=1):
        meta = chunk_titles.get(rec.chunk_id) or {}
        title = sanitize_text(meta.get("title"), f"Section {i}")
        question = sanitize_text(meta.get("question"), "")
        md += f"\n## {i}. {title}\n\n"
        if question:
            md += f"**Question:** {question}\n\n"
        md += f"**Your response:** {sanitize_text(rec.user_reply)}\n\n"
        md += f"**Advisor:** {sanitize_text(rec.assistant_reply)}\n\n"
        if rec.timestamp:
            md += f"_Recorded {rec.timestamp}_\n"
    return md


class ReportGenerator:
    def __init__(self, db: Database, catalog: ChunkCatalog, reports_dir: Path) -> None:
        self._db = db
        self._catalog = catalog
        self._reports_dir = Path(reports_dir)

    async def generate(self, session_id: str, journal: Sequence[ResponseRecord]) -> ReportResult:
        if not session_id:
            raise ReportGenerationError("session_id is required")
        return await asyncio.to_thread(self._generate_sync, session_id, list(journal))

    def _generate_sync(self, session_id: str, journal: List[ResponseRecord]) -> ReportResult:
        report_id = uuid.uuid4().hex
        generated_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        titles: Dict[str, Dict[str, str]] = {}
        for rec in journal:
            if rec.chunk_id in titles:
                continue
            chunk = self._catalog.get_by_id(rec.chunk_id)
            if chunk is not None:
                titles[rec.chunk_id] = {"title": chunk.title, "question": chunk.question}
        md = render_report(session_id, journal, titles, generated_at)

        root = self._reports_dir.resolve()
        target = root / report_dir_name(session_id) / f"{report_id}.md"
        if target.resolve().parent.parent != root:
            raise ReportGenerationError(f"report path escapes reports dir: {session_id!r}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(md, encoding="utf-8")
        except OSError as exc:
            raise ReportGenerationError(f"cannot write report: {exc}") from exc
        try:
            with self._db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_reports (id, session_id, report_path, generated_at)
                    VALUES (?, ?, ?, datetime('now'))
                    """,
                    (report_id, session_id, str(target)),
                )
        except PersistenceFailure as exc:
            raise ReportGenerationError(f"cannot register report: {exc}") from exc
        logger.info("Report %s generated for session %s (%d exchanges)", report_id, session_id, len(journal))
        return ReportResult(report_id=report_id, report_path=str(target))

    def list_reports(self, session_id: str) -> List[Dict[str, Any]]:
        rows = self._db.fetch_all(
            """
            SELECT id, session_id, report_path, generated_at
            FROM session_reports
            WHERE session_id = ?
            ORDER BY generated_at DESC, id ASC
            """,
            (session_id,),
        )
        return [dict(r) for r in rows]

    def get_report_path(self, session_id: str, report_id: str) -> Optional[Path]:
        row = self._db.fetch_one(
            "SELECT report_path FROM session_reports WHERE id = ? AND session_id = ?",
            (report_id, session_id),
        )
        if not row:
            return None
        path = Path(row["report_path"])
        return path if path.is_file() else None
