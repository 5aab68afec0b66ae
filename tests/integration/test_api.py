"""集成测试：/health、chat completions webhook、会话与报告接口，错误响应不泄露敏感信息。"""

from __future__ import annotations

import json

import pytest
from conftest import SAMPLE_CHUNKS, FakeLLM
from fastapi.testclient import TestClient

from edu_agent.app import app
from edu_agent.config import settings
from edu_agent.dependencies import get_services
from edu_agent.services.completion import COMPLETION_WITH_REPORT
from edu_agent.services.llm_service import LLMTimeoutError
from edu_agent.services.turn_orchestrator import ACK_NEUTRAL


@pytest.fixture
def services(make_services):
    svc = make_services(llm=FakeLLM(error=LLMTimeoutError("offline")))
    app.dependency_overrides[get_services] = lambda: svc
    try:
        yield svc
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(app)


def _sse_payloads(text: str):
    out = []
    for block in text.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            out.append(block[len("data: "):])
    return out


def _body(*replies: str, **extra):
    messages = [{"role": "assistant", "content": SAMPLE_CHUNKS[0]["content"]}]
    for reply in replies:
        messages.append({"role": "user", "content": reply})
    return {"model": "edu-agent", "messages": messages, **extra}


def test_health_returns_ok(client) -> None:
    """GET /health 返回 200 且 status=ok，不暴露 API Key。"""
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data.get("status") == "ok"
    assert "llm_configured" in data
    assert "sk-" not in r.text


def test_describe_endpoint(client) -> None:
    r = client.get("/api/chat/completions")
    assert r.status_code == 200
    assert r.json()["method"] == "POST"


def test_streaming_turn_emits_openai_chunks(client, services) -> None:
    """默认流式：role delta、content delta、stop，最后 [DONE]。"""
    services.store.create("conv-1")
    r = client.post("/api/chat/completions", json=_body("I use an app."), headers={"x-conversation-id": "conv-1"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    payloads = _sse_payloads(r.text)
    assert payloads[-1] == "[DONE]"
    chunks = [json.loads(p) for p in payloads[:-1]]
    assert len(chunks) == 3
    assert all(c["object"] == "chat.completion.chunk" for c in chunks)
    assert len({c["id"] for c in chunks}) == 1
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    content = chunks[1]["choices"][0]["delta"]["content"]
    assert content.startswith(ACK_NEUTRAL + "\n\n---\n\n")
    assert SAMPLE_CHUNKS[1]["question"] in content
    assert chunks[2]["choices"][0]["finish_reason"] == "stop"
    assert services.store.get("conv-1").current_chunk_index == 1


def test_non_streaming_turn_returns_usage(client, services) -> None:
    services.store.create("conv-1")
    r = client.post("/v1/chat/completions", json=_body("I use an app.", stream=False, conversation_id="conv-1"))
    assert r.status_code == 200
    data = r.json()
    assert data["object"] == "chat.completion"
    text = data["choices"][0]["message"]["content"]
    assert SAMPLE_CHUNKS[1]["content"] in text
    assert data["usage"]["completion_tokens"] == len(text) // 4
    assert data["usage"]["total_tokens"] == data["usage"]["prompt_tokens"] + data["usage"]["completion_tokens"]


@pytest.mark.parametrize(
    "headers,extra",
    [
        ({"x-elevenlabs-conversation-id": "conv-1"}, {}),
        ({}, {"variables": {"conversation_id": "conv-1"}}),
        ({}, {"metadata": {"conversation_id": "conv-1"}}),
    ],
)
def test_conversation_id_sources(client, services, headers, extra) -> None:
    services.store.create("conv-1")
    r = client.post("/api/chat/completions", json=_body("yes", stream=False, **extra), headers=headers)
    assert r.status_code == 200
    assert services.store.get("conv-1").current_chunk_index == 1


def test_redelivered_turn_is_replayed(client, services) -> None:
    services.store.create("conv-1")
    headers = {"x-conversation-id": "conv-1", "Idempotency-Key": "turn-1"}
    first = client.post("/api/chat/completions", json=_body("yes", stream=False), headers=headers)
    again = client.post("/api/chat/completions", json=_body("yes", stream=False), headers=headers)
    assert again.json()["choices"][0]["message"]["content"] == first.json()["choices"][0]["message"]["content"]
    assert services.store.get("conv-1").current_chunk_index == 1
    assert len(services.journal.get_all("conv-1")) == 1


def test_full_session_produces_downloadable_report(client, services) -> None:
    r = client.post("/api/sessions", json={"sessionId": "conv-1"})
    assert r.status_code == 200
    assert r.json()["firstMessage"] == f"{SAMPLE_CHUNKS[0]['content']}\n\n{SAMPLE_CHUNKS[0]['question']}"

    replies = []
    last = None
    for reply in ("an app", "credit card", "car loan"):
        replies.append(reply)
        last = client.post(
            "/api/chat/completions",
            json=_body(*replies, stream=False),
            headers={"x-conversation-id": "conv-1"},
        )
    assert last.json()["choices"][0]["message"]["content"] == f"{ACK_NEUTRAL}\n\n{COMPLETION_WITH_REPORT}"

    state = client.get("/api/sessions/conv-1").json()
    assert state["session"]["completed"] is True
    assert state["session"]["deliveryState"] == "completed"
    assert state["currentChunk"] is None
    assert [x["userResponse"] for x in state["responses"]] == ["an app", "credit card", "car loan"]

    reports = client.get("/api/reports/conv-1").json()
    assert len(reports) == 1
    download = client.get(reports[0]["url"])
    assert download.status_code == 200
    assert "# Session Report" in download.text
    assert "car loan" in download.text


def test_unknown_session_404(client) -> None:
    r = client.get("/api/sessions/missing")
    assert r.status_code == 404
    assert r.json() == {"detail": "session not found"}
    assert client.get("/api/reports/missing/nope").status_code == 404


def test_register_session_feeds_resolver(client, services) -> None:
    services.store.create("frontend-1")
    r = client.post("/api/register-session", json={"sessionId": "frontend-1", "externalId": "client-9"})
    assert r.status_code == 200
    assert r.json()["frontendSessionId"] == "frontend-1"

    turn = client.post("/api/chat/completions", json=_body("yes", stream=False))
    assert turn.status_code == 200
    assert services.store.get("frontend-1").current_chunk_index == 1


def test_invalid_body_returns_422(client) -> None:
    """messages 类型错误时返回 422，响应无堆栈。"""
    r = client.post("/api/chat/completions", json={"messages": "hello"})
    assert r.status_code == 422
    data = r.json()
    assert data["detail"] == "Validation error"
    assert "traceback" not in r.text.lower()


def test_api_key_required_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "api_key", "secret-key")
    assert client.post("/api/chat/completions", json=_body("yes", stream=False)).status_code == 401
    wrong = client.get("/api/chat/completions", headers={"Authorization": "Bearer secret-kez"})
    assert wrong.status_code == 401
    assert wrong.headers["WWW-Authenticate"] == "Bearer"
    assert "secret-key" not in wrong.text
    ok = client.get("/api/chat/completions", headers={"Authorization": "Bearer secret-key"})
    assert ok.status_code == 200
    assert client.get("/health").status_code == 200
