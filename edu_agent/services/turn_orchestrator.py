"""TurnOrchestrator: one inbound webhook turn, end to end.

States per turn::

    RESOLVING -> MODE_SELECT -> STRUCTURED_TURN | OPEN_ENDED_TURN -> RESPONDING

STRUCTURED_TURN treats the user's text as the reply to the chunk that was
already delivered (by the previous turn, or by the platform's first message),
journals it, advances, and then either delivers the next chunk or completes
the session.

Guarding one logical reply against double delivery:

* a per-session ``asyncio.Lock`` serialises turns for the same session inside
  this process, for the whole of the structured turn;
* every turn carries an idempotency key (platform supplied, else derived from
  the session id and message history); a key equal to the session's
  ``last_turn_key`` is replayed, never re-applied;
* the journal append and the index move commit in one sqlite transaction,
  and the index move is a compare-and-swap. A CAS conflict (another process got
  there first) re-reads the session and decides again.

Only the commit is allowed to fail the turn. Lead-in text and the report are
enhancements computed after the commit and degrade silently.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from edu_agent.db import Database, PersistenceFailure, StaleSessionError
from edu_agent.models import Chunk, ConversationType, MalformedRecord, Session
from edu_agent.prompts import load_prompt
from edu_agent.services.admin_config import AdminConfig
from edu_agent.services.chunk_catalog import ChunkCatalog
from edu_agent.services.chunk_engine import ChunkDeliveryEngine
from edu_agent.services.completion import COMPLETION_WITHOUT_REPORT, CompletionHandler
from edu_agent.services.journal import ResponseJournal
from edu_agent.services.lead_in import LeadInGenerator
from edu_agent.services.llm_service import LLMClient
from edu_agent.services.session_resolver import SessionResolver
from edu_agent.services.session_store import ConversationSessionStore

logger = logging.getLogger(__name__)

ACK_PERSONALIZED = (
    "Thank you for sharing that. Your response helps me understand your financial situation better."
)
ACK_NEUTRAL = "Thank you for your response."
APOLOGY = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Please try again in a moment."
)


class TurnStatus(str, Enum):
    STRUCTURED = "structured"
    COMPLETED = "completed"
    REPLAYED = "replayed"
    OPEN_ENDED = "open_ended"
    # 结构化轮次内的非持久化异常：已道歉，状态未损坏
    APOLOGY = "apology"
    # 持久化失败：本轮失败，需以 500 语义上报
    FAILED = "failed"


@dataclass(frozen=True)
class TurnRequest:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    conversation_id: Optional[str] = None
    # 平台提供的幂等键；为空时由 session id + 消息历史推导
    turn_key: Optional[str] = None

    @property
    def user_text(self) -> Optional[str]:
        """Text of the last message, if that message came from the user."""
        if not self.messages:
            return None
        last = self.messages[-1]
        if last.get("role") != "user":
            return None
        content = last.get("content")
        return content.strip() if isinstance(content, str) and content.strip() else None


@dataclass(frozen=True)
class TurnResult:
    text: str
    status: TurnStatus
    session_id: Optional[str] = None
    chunk_index: Optional[int] = None
    completed: bool = False


def _kv_detail(**kvs: object) -> str:
    """将 detail 标准化为 key=value | key=value ... 形式，方便扫读日志。"""
    parts: List[str] = []
    for k, v in kvs.items():
        if v is None:
            continue
        if isinstance(v, str):
            vv = v.strip().replace("\n", " ").replace("\r", " ")
            if not vv:
                continue
        elif isinstance(v, bool):
            vv = "true" if v else "false"
        else:
            vv = str(v)
        parts.append(f"{k}={vv}")
    return " | ".join(parts)


def derive_turn_key(session_id: str, messages: List[Dict[str, Any]]) -> str:
    """Fallback idempotency key when the platform sends no turn id.

    A redelivered webhook carries the identical history, so it hashes
    identically, and each real turn grows the history, so it hashes
    differently. This relies on the platform sending the full transcript:
    a platform that posts only the latest message must send a turn id
    (``Idempotency-Key`` / ``X-Turn-Id`` / body ``turn_id``), otherwise two
    consecutive replies with the same wording ("Okay") share a key and the
    second one is replayed instead of advancing.
    """
    history = [
        {"role": m.get("role"), "content": m.get("content")}
        for m in messages
        if isinstance(m, dict)
    ]
    raw = json.dumps([session_id, len(history), history], ensure_ascii=False, sort_keys=True)
    return "h:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


def compose_next_chunk(ack: str, lead_in: Optional[str], chunk: Chunk) -> str:
    body = f"{lead_in}\n\n{chunk.content}" if lead_in else chunk.content
    return f"{ack}\n\n---\n\n{body}\n\n{chunk.question}"


class TurnOrchestrator:
    """Composes resolver, engine, journal, lead-in and completion into one turn."""

    def __init__(
        self,
        db: Database,
        resolver: SessionResolver,
        store: ConversationSessionStore,
        catalog: ChunkCatalog,
        engine: ChunkDeliveryEngine,
        journal: ResponseJournal,
        lead_in: LeadInGenerator,
        completion: CompletionHandler,
        admin_config: AdminConfig,
        llm: LLMClient,
        assistant_name: str = "Sanjay",
        max_conflict_retries: int = 3,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._store = store
        self._catalog = catalog
        self._engine = engine
        self._journal = journal
        self._lead_in = lead_in
        self._completion = completion
        self._admin = admin_config
        self._llm = llm
        self._assistant_name = assistant_name
        self._max_conflict_retries = max(1, max_conflict_retries)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # -- main entry point -------------------------------------------------

    async def handle_turn(self, request: TurnRequest) -> TurnResult:
        t0 = time.time()
        # RESOLVING
        session = await self._resolve(request)

        # MODE_SELECT
        user_text = request.user_text
        if session is None:
            result = await self._open_ended(request, None)
        else:
            turn_key = request.turn_key or derive_turn_key(session.id, request.messages)
            if self._engine.is_duplicate_turn(session, turn_key):
                result = await self._replay(session)
            elif user_text is None:
                logger.info("Turn without a user message for session %s; open-ended fallback", session.id)
                result = await self._open_ended(request, session.id)
            elif session.completed or session.conversation_type is ConversationType.OPEN_ENDED:
                result = await self._open_ended(request, session.id)
            else:
                result = await self._structured(session.id, request, user_text, turn_key)

        logger.info(
            "Turn finished: %s",
            _kv_detail(
                session_id=result.session_id,
                status=result.status.value,
                chunk_index=result.chunk_index,
                completed=result.completed,
                duration_ms=int((time.time() - t0) * 1000),
            ),
        )
        return result

    # -- RESOLVING ----------------------------------------------------------

    async def _resolve(self, request: TurnRequest) -> Optional[Session]:
        resolved = await self._resolver.resolve(request.conversation_id)
        if resolved is None:
            return None
        try:
            session = await asyncio.to_thread(self._store.get, resolved.session_id)
            if session is None:
                # 前端只写了注册表、没调 init：首轮即建会话，平台首条消息已交付第 0 块
                session = await asyncio.to_thread(self._store.create, resolved.session_id)
                logger.info(
                    "Session created on first turn: %s",
                    _kv_detail(session_id=session.id, source=resolved.source, external_id=resolved.external_id),
                )
        except (PersistenceFailure, MalformedRecord) as exc:
            logger.warning("Cannot load session %s (%s); open-ended fallback", resolved.session_id, exc)
            return None
        return session

    # -- STRUCTURED_TURN ----------------------------------------------------

    @asynccontextmanager
    async def _session_guard(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] == 0:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def _structured(
        self,
        session_id: str,
        request: TurnRequest,
        user_text: str,
        turn_key: str,
    ) -> TurnResult:
        async with self._session_guard(session_id):
            for attempt in range(1, self._max_conflict_retries + 1):
                # 冲突后重新读取再判断，绝不盲目重复推进
                try:
                    session = await asyncio.to_thread(self._store.get, session_id)
                except (PersistenceFailure, MalformedRecord):
                    logger.exception("Session %s unreadable at turn start", session_id)
                    return TurnResult(APOLOGY, TurnStatus.FAILED, session_id)
                if session is None:
                    return await self._open_ended(request, None)
                if self._engine.is_duplicate_turn(session, turn_key):
                    return await self._replay(session)
                if session.completed:
                    return await self._open_ended(request, session_id)
                try:
                    return await self._structured_turn(session, user_text, turn_key)
                except StaleSessionError as exc:
                    logger.warning("CAS conflict on attempt %d: %s; re-reading", attempt, exc)
                    continue
                except PersistenceFailure:
                    logger.exception("Persistence failure in structured turn for session %s", session_id)
                    return TurnResult(APOLOGY, TurnStatus.FAILED, session_id, session.current_chunk_index)
                except Exception:
                    logger.exception("Structured turn failed before commit for session %s", session_id)
                    return TurnResult(APOLOGY, TurnStatus.APOLOGY, session_id, session.current_chunk_index)
        logger.error("Session %s still conflicting after %d attempt(s)", session_id, self._max_conflict_retries)
        return TurnResult(APOLOGY, TurnStatus.FAILED, session_id)

    def _acknowledgment(self, session: Session) -> str:
        return ACK_PERSONALIZED if session.personalization_enabled else ACK_NEUTRAL

    def _read_chunks(self, session: Session) -> Tuple[Optional[Chunk], Optional[Chunk]]:
        current = self._engine.get_current_chunk(session)
        nxt = None
        if current is not None and session.current_chunk_index + 1 < session.chunk_count:
            nxt = self._catalog.get_by_index(session.current_chunk_index + 1)
        return current, nxt

    def _commit_turn(self, session: Session, chunk: Chunk, user_text: str, ack: str, turn_key: str) -> bool:
        with self._db.connect() as conn:
            self._journal.append(session.id, chunk.id, user_text, ack, conn=conn)
            return self._engine.advance(session, turn_key=turn_key, conn=conn)

    async def _structured_turn(self, session: Session, user_text: str, turn_key: str) -> TurnResult:
        # 3a: 读当前块；下一块也在提交前读好，提交后不再有会失败的读
        current, upcoming = await asyncio.to_thread(self._read_chunks, session)
        if current is None:
            # 防御：索引未到 chunk_count 但目录里已没有这个块
            await asyncio.to_thread(self._engine.finish, session, turn_key)
            done = replace(session, current_chunk_index=session.chunk_count, completed=True)
            text = await self._completion.complete(done)
            await self._remember(done.id, turn_key, text)
            return TurnResult(text, TurnStatus.COMPLETED, done.id, done.current_chunk_index, True)

        ack = self._acknowledgment(session)
        logger.info(
            "Structured reply: %s",
            _kv_detail(session_id=session.id, chunk_id=current.id, chunk_index=session.current_chunk_index),
        )
        # 3e + 3f: 同一事务
        has_next = await asyncio.to_thread(self._commit_turn, session, current, user_text, ack, turn_key)

        # 已落库；以下步骤失败只会降级，不影响进度
        try:
            if has_next:
                advanced = replace(session, current_chunk_index=session.current_chunk_index + 1)
                if upcoming is None:
                    logger.warning("Chunk %d missing after advance for session %s", advanced.current_chunk_index, session.id)
                    text = ack
                else:
                    lead_in = await self._generate_lead_in(advanced, upcoming)
                    text = compose_next_chunk(ack, lead_in, upcoming)
                await self._remember(session.id, turn_key, text)
                return TurnResult(text, TurnStatus.STRUCTURED, session.id, advanced.current_chunk_index, False)

            done = replace(session, current_chunk_index=session.chunk_count, completed=True)
            text = f"{ack}\n\n{await self._completion.complete(done)}"
            await self._remember(session.id, turn_key, text)
            return TurnResult(text, TurnStatus.COMPLETED, session.id, done.current_chunk_index, True)
        except Exception:
            logger.exception("Post-commit step failed for session %s; progress is saved", session.id)
            return TurnResult(APOLOGY, TurnStatus.APOLOGY, session.id, None, not has_next)

    async def _generate_lead_in(self, session: Session, upcoming: Chunk) -> Optional[str]:
        try:
            records = await asyncio.to_thread(self._journal.get_all, session.id)
            defaults = await asyncio.to_thread(self._admin.get_defaults)
        except (PersistenceFailure, MalformedRecord) as exc:
            logger.warning("Lead-in skipped for session %s: %s", session.id, exc)
            return None
        return await self._lead_in.for_session(session, defaults, records, upcoming.content)

    async def _remember(self, session_id: str, turn_key: str, text: str) -> None:
        try:
            await asyncio.to_thread(self._engine.record_response, session_id, turn_key, text)
        except PersistenceFailure as exc:
            # 只影响重放内容，不影响进度
            logger.warning("Could not cache response for session %s: %s", session_id, exc)

    async def _replay(self, session: Session) -> TurnResult:
        logger.info("Duplicate turn for session %s; replaying without advancing", session.id)
        if session.last_response:
            text = session.last_response
        else:
            ack = self._acknowledgment(session)
            chunk = await asyncio.to_thread(self._engine.get_current_chunk, session)
            if chunk is None:
                text = f"{ack}\n\n{COMPLETION_WITHOUT_REPORT}"
            else:
                text = compose_next_chunk(ack, None, chunk)
        return TurnResult(text, TurnStatus.REPLAYED, session.id, session.current_chunk_index, session.completed)

    # -- OPEN_ENDED_TURN ----------------------------------------------------

    async def _open_ended(self, request: TurnRequest, session_id: Optional[str]) -> TurnResult:
        tpl = load_prompt("open_ended")
        if request.user_text is None:
            greeting = tpl.render("greeting", assistant_name=self._assistant_name).strip()
            return TurnResult(greeting, TurnStatus.OPEN_ENDED, session_id)
        history = [
            {"role": m["role"], "content": m["content"]}
            for m in request.messages
            if m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
        ]
        try:
            text = await self._llm.send_message(
                history,
                tpl.system(assistant_name=self._assistant_name),
            )
        except Exception:
            logger.exception("Open-ended reply failed")
            return TurnResult(APOLOGY, TurnStatus.APOLOGY, session_id)
        return TurnResult(text.strip(), TurnStatus.OPEN_ENDED, session_id)
