"""单元测试：CompletionHandler 与 Markdown 报告生成。"""

from __future__ import annotations

import asyncio
from pathlib import Path

from conftest import FakeReportGenerator

from edu_agent.models import Session
from edu_agent.services.completion import (
    COMPLETION_WITH_REPORT,
    COMPLETION_WITHOUT_REPORT,
    CompletionHandler,
)
from edu_agent.services.journal import ResponseJournal
from edu_agent.services.report_service import ReportGenerationError, ReportGenerator, render_report, report_dir_name


def _done(session_id: str = "s-1") -> Session:
    return Session(
        id=session_id,
        chunk_count=3,
        current_chunk_index=3,
        completed=True,
        personalization_enabled=False,
        conversation_aware=None,
    )


def test_report_success_message(db) -> None:
    journal = ResponseJournal(db)
    journal.append("s-1", "budgeting", "yes", "ack")
    reports = FakeReportGenerator()
    text = asyncio.run(CompletionHandler(reports, journal).complete(_done()))
    assert text == COMPLETION_WITH_REPORT
    session_id, records = reports.calls[0]
    assert session_id == "s-1"
    assert [r.chunk_id for r in records] == ["budgeting"]


def test_report_failure_message(db) -> None:
    reports = FakeReportGenerator(error=ReportGenerationError("disk full"))
    text = asyncio.run(CompletionHandler(reports, ResponseJournal(db)).complete(_done()))
    assert text == COMPLETION_WITHOUT_REPORT


def test_report_timeout_message(db) -> None:
    reports = FakeReportGenerator(delay=0.5)
    text = asyncio.run(CompletionHandler(reports, ResponseJournal(db), timeout=0.05).complete(_done()))
    assert text == COMPLETION_WITHOUT_REPORT


def test_report_generator_writes_and_registers(db, catalog, tmp_path) -> None:
    journal = ResponseJournal(db)
    journal.append("s-1", "budgeting", "I use an app", "Thank you for your response.")
    journal.append("s-1", "emergency-fund", "undefined", "Thank you for your response.")
    gen = ReportGenerator(db, catalog, tmp_path / "reports")

    result = asyncio.run(gen.generate("s-1", journal.get_all("s-1")))

    path = Path(result.report_path)
    assert path.is_file()
    assert path.parent == (tmp_path / "reports").resolve() / "s-1"
    md = path.read_text(encoding="utf-8")
    assert "## 1. Budgeting basics" in md
    assert "Do you currently keep track of your spending?" in md
    assert "I use an app" in md
    assert "(not provided)" in md
    listed = gen.list_reports("s-1")
    assert [r["id"] for r in listed] == [result.report_id]
    assert gen.get_report_path("s-1", result.report_id) == path
    assert gen.get_report_path("other", result.report_id) is None


def test_render_report_without_exchanges() -> None:
    md = render_report("s-1", [], {}, "2024-01-01T00:00:00+00:00")
    assert md.startswith("# Session Report")
    assert "No responses were recorded" in md


def test_report_stays_inside_reports_dir_for_unsafe_session_id(db, catalog, tmp_path) -> None:
    """会话 id 来自请求方，带 ../ 时报告仍写在 reports 目录内。"""
    journal = ResponseJournal(db)
    journal.append("../../escaped", "budgeting", "yes", "ack")
    reports_dir = tmp_path / "reports"
    gen = ReportGenerator(db, catalog, reports_dir)

    result = asyncio.run(gen.generate("../../escaped", journal.get_all("../../escaped")))

    path = Path(result.report_path).resolve()
    assert path.is_file()
    assert path.parent.parent == reports_dir.resolve()
    assert path.parent.name == report_dir_name("../../escaped")
    assert not (tmp_path.parent / "escaped").exists()
    assert gen.get_report_path("../../escaped", result.report_id) == Path(result.report_path)


def test_report_dir_name() -> None:
    assert report_dir_name("conv_123-abc") == "conv_123-abc"
    hashed = report_dir_name("../x")
    assert hashed.startswith("s-") and len(hashed) == 66
    assert report_dir_name("../x") == hashed
    assert report_dir_name("a/b") != hashed
