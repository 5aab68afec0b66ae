"""Front-end endpoints: session init/inspection, registry, reports."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel

from edu_agent.dependencies import Services, get_services
from edu_agent.models import Chunk, ConversationType, ResponseRecord, Session
from edu_agent.prompts import load_prompt

router = APIRouter()


class SessionInitRequest(BaseModel):
    sessionId: Optional[str] = None
    personalizationEnabled: Optional[bool] = None
    conversationAware: Optional[bool] = None


class RegisterSessionRequest(BaseModel):
    sessionId: str
    externalId: Optional[str] = None
    conversationId: Optional[str] = None


def _session_payload(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "conversationType": session.conversation_type.value,
        "chunkCount": session.chunk_count,
        "currentChunkIndex": session.current_chunk_index,
        "completed": session.completed,
        "deliveryState": session.delivery_state.value,
        "personalizationEnabled": session.personalization_enabled,
        "conversationAware": session.conversation_aware,
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
    }


def _chunk_payload(chunk: Optional[Chunk]) -> Optional[Dict[str, Any]]:
    if chunk is None:
        return None
    return {
        "id": chunk.id,
        "orderIndex": chunk.order_index,
        "title": chunk.title,
        "content": chunk.content,
        "question": chunk.question,
    }


def _record_payload(rec: ResponseRecord) -> Dict[str, Any]:
    return {
        "id": rec.id,
        "chunkId": rec.chunk_id,
        "userResponse": rec.user_reply,
        "aiResponse": rec.assistant_reply,
        "timestamp": rec.timestamp,
    }


def _first_message(services: Services, session: Session) -> str:
    """Opening line the voice platform speaks before the first user turn."""
    if session.conversation_type is ConversationType.STRUCTURED:
        chunk = services.engine.get_current_chunk(session)
        if chunk is not None:
            return f"{chunk.content}\n\n{chunk.question}"
    tpl = load_prompt("open_ended")
    return tpl.render("greeting", assistant_name=services.settings.assistant_name).strip()


@router.post("/sessions")
async def init_session(req: SessionInitRequest, services: Services = Depends(get_services)) -> dict:
    def _init() -> Dict[str, Any]:
        session = services.store.get_or_create(
            req.sessionId,
            personalization_enabled=req.personalizationEnabled,
            conversation_aware=req.conversationAware,
        )
        return {"session": _session_payload(session), "firstMessage": _first_message(services, session)}

    return await asyncio.to_thread(_init)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, services: Services = Depends(get_services)) -> dict:
    def _load() -> Optional[Dict[str, Any]]:
        session = services.store.get(session_id)
        if session is None:
            return None
        return {
            "session": _session_payload(session),
            "currentChunk": _chunk_payload(services.engine.get_current_chunk(session)),
            "responses": [_record_payload(r) for r in services.journal.get_all(session_id)],
        }

    data = await asyncio.to_thread(_load)
    if data is None:
        raise HTTPException(status_code=404, detail="session not found")
    return data


@router.post("/register-session")
async def register_session(req: RegisterSessionRequest, services: Services = Depends(get_services)) -> dict:
    session_id = req.sessionId.strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId must not be empty")
    entry = await asyncio.to_thread(
        services.registry.register,
        session_id,
        req.externalId or req.conversationId,
    )
    return {
        "status": "registered",
        "frontendSessionId": entry.frontend_session_id,
        "externalId": entry.external_id,
        "registeredAt": entry.registered_at,
    }


@router.get("/reports/{session_id}")
async def list_reports(session_id: str, services: Services = Depends(get_services)) -> List[dict]:
    rows = await asyncio.to_thread(services.reports.list_reports, session_id)
    return [
        {
            "reportId": r["id"],
            "sessionId": r["session_id"],
            "generatedAt": r["generated_at"],
            "url": f"/api/reports/{session_id}/{r['id']}",
        }
        for r in rows
    ]


@router.get("/reports/{session_id}/{report_id}")
async def download_report(session_id: str, report_id: str, services: Services = Depends(get_services)):
    path = await asyncio.to_thread(services.reports.get_report_path, session_id, report_id)
    if path is None:
        raise HTTPException(status_code=404, detail="report not found")
    return FileResponse(path, media_type="text/markdown", filename=f"session-report-{report_id}.md")
