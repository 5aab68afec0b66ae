"""单元测试：LeadInGenerator 跳过规则、标签清洗与失败降级。"""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeLLM

from edu_agent.models import AdminDefaults, ResponseRecord, Session
from edu_agent.services.lead_in import LeadInGenerator
from edu_agent.services.llm_service import LLMQuotaError, LLMTimeoutError


def _session(aware=None) -> Session:
    return Session(
        id="s-1",
        chunk_count=3,
        current_chunk_index=1,
        completed=False,
        personalization_enabled=False,
        conversation_aware=aware,
    )


def _record() -> ResponseRecord:
    return ResponseRecord(
        id=1,
        session_id="s-1",
        chunk_id="budgeting",
        user_reply="I track everything in a spreadsheet.",
        assistant_reply="Thank you for your response.",
        timestamp="2024-01-01 00:00:00",
    )


UPCOMING = "An emergency fund covers three to six months of essential expenses."


def test_generate_uses_last_exchange_and_preview() -> None:
    llm = FakeLLM(reply="A spreadsheet is a solid habit, and it sets us up well for savings.")
    text = asyncio.run(LeadInGenerator(llm).generate(_record(), UPCOMING))
    assert text == "A spreadsheet is a solid habit, and it sets us up well for savings."
    prompt = llm.calls[0]["messages"][0]["content"]
    assert "I track everything in a spreadsheet." in prompt
    assert UPCOMING in prompt
    assert llm.calls[0]["system_prompt"]


@pytest.mark.parametrize(
    "raw",
    [
        "Transition: Nice work so far.",
        "Here's a transition: Nice work so far.",
        "**Transition:** Nice work so far.",
        '"Nice work so far."',
    ],
)
def test_generate_strips_labels(raw) -> None:
    assert asyncio.run(LeadInGenerator(FakeLLM(reply=raw)).generate(_record(), UPCOMING)) == "Nice work so far."


@pytest.mark.parametrize("error", [LLMTimeoutError("slow"), LLMQuotaError("429"), RuntimeError("boom")])
def test_generate_failure_returns_none(error) -> None:
    assert asyncio.run(LeadInGenerator(FakeLLM(error=error)).generate(_record(), UPCOMING)) is None


def test_generate_timeout_returns_none() -> None:
    llm = FakeLLM(delay=0.5)
    assert asyncio.run(LeadInGenerator(llm, timeout=0.05).generate(_record(), UPCOMING)) is None


def test_blank_reply_returns_none() -> None:
    assert asyncio.run(LeadInGenerator(FakeLLM(reply="  ")).generate(_record(), UPCOMING)) is None


def test_for_session_skips_without_history() -> None:
    llm = FakeLLM()
    assert asyncio.run(LeadInGenerator(llm).for_session(_session(True), AdminDefaults(), [], UPCOMING)) is None
    assert llm.calls == []


def test_session_override_beats_admin_default() -> None:
    llm = FakeLLM()
    gen = LeadInGenerator(llm)
    assert asyncio.run(gen.for_session(_session(False), AdminDefaults(conversation_aware=True), [_record()], UPCOMING)) is None
    assert llm.calls == []
    assert asyncio.run(gen.for_session(_session(True), AdminDefaults(conversation_aware=False), [_record()], UPCOMING))


def test_admin_default_applies_when_session_unset() -> None:
    assert LeadInGenerator.is_enabled(_session(None), AdminDefaults(conversation_aware=False)) is False
    assert LeadInGenerator.is_enabled(_session(None), AdminDefaults(conversation_aware=True)) is True
