"""单元测试：LLMClient 请求组装与错误类型（不发真实请求）。"""

from __future__ import annotations

import asyncio

import pytest

from edu_agent.services.llm_service import LLMClient, LLMNotConfiguredError, LLMResponseError


def _client(test_settings, monkeypatch, response) -> tuple:
    test_settings.llm_api_key = "sk-test"
    test_settings.llm_base_url = "https://llm.example.com/v1/"
    client = LLMClient(test_settings)
    sent = {}

    async def fake_post(url, headers, payload):
        sent.update(url=url, headers=headers, payload=payload)
        return response

    monkeypatch.setattr(client, "_http_post", fake_post)
    return client, sent


def test_system_prompt_prepended_and_caller_system_dropped(test_settings, monkeypatch) -> None:
    client, sent = _client(
        test_settings, monkeypatch, {"choices": [{"message": {"content": "Hi there"}}]}
    )
    text = asyncio.run(
        client.send_message(
            [{"role": "system", "content": "ignored"}, {"role": "user", "content": "hello"}],
            "You are Sanjay.",
            max_tokens=120,
        )
    )
    assert text == "Hi there"
    assert sent["url"] == "https://llm.example.com/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer sk-test"
    assert sent["payload"]["messages"] == [
        {"role": "system", "content": "You are Sanjay."},
        {"role": "user", "content": "hello"},
    ]
    assert sent["payload"]["max_tokens"] == 120


def test_list_content_is_joined(test_settings, monkeypatch) -> None:
    content = [{"type": "text", "text": "Part one. "}, {"type": "text", "text": "Part two."}]
    client, _ = _client(test_settings, monkeypatch, {"choices": [{"message": {"content": content}}]})
    assert asyncio.run(client.send_message([{"role": "user", "content": "x"}])) == "Part one. Part two."


@pytest.mark.parametrize(
    "response",
    [
        {},
        [],
        {"choices": []},
        {"choices": "oops"},
        {"choices": [None]},
        {"choices": ["text"]},
        {"choices": [{"message": None}]},
        {"choices": [{"message": "hi"}]},
        {"choices": [{"message": {"content": None}}]},
        {"choices": [{"message": {"content": "  "}}]},
    ],
)
def test_malformed_or_empty_reply_raises(test_settings, monkeypatch, response) -> None:
    client, _ = _client(test_settings, monkeypatch, response)
    with pytest.raises(LLMResponseError):
        asyncio.run(client.send_message([{"role": "user", "content": "x"}]))


def test_missing_api_key_raises(test_settings) -> None:
    test_settings.llm_api_key = ""
    client = LLMClient(test_settings)
    assert client.configured is False
    with pytest.raises(LLMNotConfiguredError):
        asyncio.run(client.send_message([{"role": "user", "content": "x"}]))
