"""OpenAI-compatible chat-completions webhook for the voice platform.

Mounted at ``/api/chat/completions`` and ``/v1/chat/completions``. The voice
platform posts the whole conversation on every turn; the last ``user`` message
is the learner's reply.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from edu_agent.dependencies import Services, get_services
from edu_agent.services.turn_orchestrator import APOLOGY, TurnRequest, TurnResult, TurnStatus

logger = logging.getLogger(__name__)

router = APIRouter()

# header 优先于 body 字段
_CONVERSATION_HEADERS = ("conversation_id", "x-conversation-id", "x-elevenlabs-conversation-id")
_TURN_HEADERS = ("idempotency-key", "x-turn-id")
_DEFAULT_MODEL = "edu-agent"


class ChatMessage(BaseModel):
    role: str
    # 平台偶尔会发 list 形式的 content，这里不做校验，只取字符串
    content: Optional[Any] = None


class ChatCompletionRequest(BaseModel):
    model: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    stream: Optional[bool] = None
    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


def _first_str(*values: Any) -> Optional[str]:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def extract_conversation_id(request: Request, body: ChatCompletionRequest) -> Optional[str]:
    from_headers = _first_str(*(request.headers.get(h) for h in _CONVERSATION_HEADERS))
    if from_headers:
        return from_headers
    return _first_str(
        body.conversation_id,
        (body.variables or {}).get("conversation_id"),
        (body.metadata or {}).get("conversation_id"),
    )


def extract_turn_key(request: Request, body: ChatCompletionRequest) -> Optional[str]:
    return _first_str(*(request.headers.get(h) for h in _TURN_HEADERS), body.turn_id)


def estimate_tokens(text: str) -> int:
    return len(text or "") // 4


def _sse_data(payload: Any) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


def _chunk(completion_id: str, created: int, model: str, delta: Dict[str, Any], finish: Optional[str]) -> Dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
    }


def completion_body(
    completion_id: str,
    created: int,
    model: str,
    text: str,
    messages: List[Dict[str, Any]],
) -> Dict[str, Any]:
    prompt_tokens = sum(
        estimate_tokens(m["content"]) for m in messages if isinstance(m.get("content"), str)
    )
    completion_tokens = estimate_tokens(text)
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


@router.get("/chat/completions")
def describe_chat_completions() -> dict:
    return {
        "endpoint": "chat/completions",
        "method": "POST",
        "description": (
            "OpenAI-compatible webhook for the voice platform. Each user turn is treated as the "
            "reply to the chunk delivered last; the response acknowledges it and delivers the next "
            "chunk, or completes the session."
        ),
        "stream": "Server-sent events by default; send \"stream\": false for a single JSON body.",
        "conversationId": list(_CONVERSATION_HEADERS) + ["body.conversation_id"],
    }


@router.post("/chat/completions")
async def chat_completions(
    body: ChatCompletionRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    messages = [m.model_dump() for m in body.messages]
    turn = TurnRequest(
        messages=messages,
        conversation_id=extract_conversation_id(request, body),
        turn_key=extract_turn_key(request, body),
    )
    orchestrator = services.orchestrator
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())
    model = body.model or _DEFAULT_MODEL
    stream = True if body.stream is None else body.stream

    if not stream:
        result: TurnResult = await orchestrator.handle_turn(turn)
        if result.status is TurnStatus.FAILED:
            return JSONResponse(
                status_code=500,
                content={"error": {"message": result.text, "type": "server_error"}},
            )
        return completion_body(completion_id, created, model, result.text, messages)

    async def gen() -> AsyncIterator[str]:
        # 先发 role delta，平台可以立刻开始准备 TTS
        yield _sse_data(_chunk(completion_id, created, model, {"role": "assistant"}, None))
        try:
            text = (await orchestrator.handle_turn(turn)).text
        except Exception:
            # 流已开始，无法再改状态码
            logger.exception("Streaming turn failed")
            text = APOLOGY
        yield _sse_data(_chunk(completion_id, created, model, {"content": text}, None))
        yield _sse_data(_chunk(completion_id, created, model, {}, "stop"))
        yield _sse_data("[DONE]")

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
