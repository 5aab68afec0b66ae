"""Pytest fixtures for edu-agent tests. Run from the project root: python -m pytest tests/ -v."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# 保证从项目根目录运行时能 import edu_agent
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from edu_agent.config import Settings  # noqa: E402
from edu_agent.db import Database  # noqa: E402
from edu_agent.dependencies import Services, build_services  # noqa: E402
from edu_agent.models import ReportResult  # noqa: E402
from edu_agent.services.chunk_catalog import ChunkCatalog  # noqa: E402

SAMPLE_CHUNKS: List[Dict[str, str]] = [
    {
        "id": "budgeting",
        "title": "Budgeting basics",
        "content": "A budget is simply a plan for where your money goes each month.",
        "question": "Do you currently keep track of your spending?",
    },
    {
        "id": "emergency-fund",
        "title": "Emergency savings",
        "content": "An emergency fund covers three to six months of essential expenses.",
        "question": "How would you handle an unexpected bill today?",
    },
    {
        "id": "debt",
        "title": "Managing debt",
        "content": "Paying the highest interest debt first saves the most money over time.",
        "question": "Which of your debts feels most pressing right now?",
    },
]


class FakeLLM:
    """Stands in for LLMClient; records every call."""

    configured = True

    def __init__(self, reply: str = "That's a great start, and it leads nicely into our next topic.",
                 error: Optional[Exception] = None, delay: float = 0.0) -> None:
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def send_message(self, messages, system_prompt=None, temperature=0.7, max_tokens=512) -> str:
        self.calls.append({"messages": list(messages), "system_prompt": system_prompt, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeReportGenerator:
    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0) -> None:
        self.error = error
        self.delay = delay
        self.calls: List[Any] = []

    async def generate(self, session_id, journal) -> ReportResult:
        self.calls.append((session_id, list(journal)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ReportResult(report_id="report-1", report_path=f"/reports/{session_id}/report-1.md")


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(str(tmp_path / "edu_agent.db"))
    database.init_schema()
    return database


@pytest.fixture
def catalog(db) -> ChunkCatalog:
    c = ChunkCatalog(db)
    c.replace_active(SAMPLE_CHUNKS)
    return c


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    cfg = Settings()
    cfg.db_path = str(tmp_path / "edu_agent.db")
    cfg.registry_dir = tmp_path / "sessions"
    cfg.reports_dir = tmp_path / "reports"
    cfg.chunks_file = None
    cfg.resolver_attempts = 3
    cfg.resolver_base_delay = 0.01
    cfg.lead_in_timeout = 1.0
    cfg.report_timeout = 1.0
    cfg.assistant_name = "Sanjay"
    return cfg


@pytest.fixture
def make_services(test_settings):
    """Factory: full service graph on a temp database, with optional fakes."""

    def _make(llm=None, reports=None, chunks=SAMPLE_CHUNKS) -> Services:
        services = build_services(test_settings, llm=llm or FakeLLM(), reports=reports)
        services.db.init_schema()
        if chunks:
            services.catalog.replace_active(chunks)
        return services

    return _make
