"""LLM 集成服务：通过 OpenAI 兼容的 Chat Completions API 生成文本。

通过 HTTP API 直接调用，不依赖 SDK；HTTP 调用带 tenacity 指数退避重试。

失败一律抛出 :class:`LLMError` 的子类，绝不静默返回空字符串：
- LLMNotConfiguredError: 未配置 API Key / Base URL
- LLMTimeoutError:       超时
- LLMQuotaError:         429 / 配额耗尽
- LLMResponseError:      HTTP 错误或返回格式异常
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from edu_agent.config import Settings

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """Base class for every LLM collaborator failure."""


class LLMNotConfiguredError(LLMError):
    pass


class LLMTimeoutError(LLMError):
    pass


class LLMQuotaError(LLMError):
    pass


class LLMResponseError(LLMError):
    pass


class _RetryableStatus(Exception):
    """5xx from the upstream; retried, then converted to LLMResponseError."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class LLMClient:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        return bool(self._settings.llm_api_key and self._settings.llm_base_url)

    def _build_retry_decorator(self):
        """Return a tenacity retry decorator based on current settings."""
        s = self._settings
        return retry(
            retry=retry_if_exception_type((_RetryableStatus, httpx.TransportError)),
            stop=stop_after_attempt(max(1, s.llm_max_retries)),
            wait=wait_exponential(
                min=max(0.1, s.llm_retry_min_wait),
                max=max(1, s.llm_retry_max_wait),
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _http_post(self, url: str, headers: dict, payload: dict) -> dict:
        """Execute the HTTP POST with tenacity retry (exponential backoff)."""
        _retry = self._build_retry_decorator()

        @_retry
        async def _do() -> httpx.Response:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self._settings.llm_timeout)) as client:
                resp = await client.post(url, headers=headers, json=payload)
            if resp.status_code >= 500:
                raise _RetryableStatus(resp)
            return resp

        try:
            resp = await _do()
        except httpx.TimeoutException as exc:
            raise LLMTimeoutError(f"LLM request timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise LLMResponseError(f"LLM transport error: {exc!r}") from exc
        except _RetryableStatus as exc:
            raise LLMResponseError(f"LLM upstream error: {exc}") from exc

        if resp.status_code == 429:
            raise LLMQuotaError("LLM rate limit or quota exceeded (HTTP 429)")
        if resp.status_code >= 400:
            raise LLMResponseError(f"LLM request rejected: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise LLMResponseError("LLM response is not JSON") from exc

    async def send_message(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 512,
    ) -> str:
        """Send a chat and return the single assistant message text."""
        if not self._settings.llm_api_key:
            raise LLMNotConfiguredError("LLM API Key 未配置。请设置环境变量 LLM_API_KEY 或 OPENAI_API_KEY。")
        if not self._settings.llm_base_url:
            raise LLMNotConfiguredError("LLM Base URL 未配置。请设置环境变量 EDU_AGENT_LLM_BASE_URL。")
        url = f"{self._settings.llm_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._settings.llm_api_key}",
            "Content-Type": "application/json",
        }
        chat: List[Dict[str, Any]] = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        chat.extend(m for m in messages if m.get("role") != "system")
        payload = {
            "model": self._settings.llm_model,
            "messages": chat,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        data = await self._http_post(url, headers, payload)
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list):
            raise LLMResponseError("LLM API 返回格式异常: missing choices")
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict):
            raise LLMResponseError("LLM API 返回格式异常: missing message")
        content = message.get("content")
        if isinstance(content, list):
            content = "".join(
                p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"
            )
        if not isinstance(content, str) or not content.strip():
            raise LLMResponseError("LLM API 返回空内容")
        return content
