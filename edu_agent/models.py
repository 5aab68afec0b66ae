"""Typed records for sessions, chunks and the response journal.

Rows coming out of sqlite are parsed here and nowhere else; a row that does
not fit the expected shape raises :class:`MalformedRecord` instead of leaking
``None`` into the delivery engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class MalformedRecord(ValueError):
    """Raised when a persisted row or registry record cannot be parsed."""


class ConversationType(str, Enum):
    STRUCTURED = "structured"
    OPEN_ENDED = "open-ended"


class DeliveryState(str, Enum):
    WAITING_FOR_RESPONSE = "waiting_for_response"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Chunk:
    id: str
    order_index: int
    title: str
    content: str
    question: str


@dataclass(frozen=True)
class Session:
    id: str
    chunk_count: int
    current_chunk_index: int
    completed: bool
    personalization_enabled: bool
    # None = 沿用 admin 默认值
    conversation_aware: Optional[bool]
    conversation_type: ConversationType = ConversationType.STRUCTURED
    last_turn_key: Optional[str] = None
    last_response: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def delivery_state(self) -> DeliveryState:
        return DeliveryState.COMPLETED if self.completed else DeliveryState.WAITING_FOR_RESPONSE


@dataclass(frozen=True)
class ResponseRecord:
    id: int
    session_id: str
    chunk_id: str
    user_reply: str
    assistant_reply: str
    timestamp: str


@dataclass(frozen=True)
class AdminDefaults:
    personalization_enabled: bool = False
    conversation_aware: bool = True
    use_structured_conversation: bool = True


@dataclass(frozen=True)
class ReportResult:
    report_id: str
    report_path: str


@dataclass(frozen=True)
class RegistryEntry:
    """Latest-session record written by the front end."""

    frontend_session_id: str
    external_id: Optional[str]
    registered_at: str


# ---------------------------------------------------------------------------
# Parse boundary
# ---------------------------------------------------------------------------


def _require(row: Mapping[str, Any], key: str, kind: str) -> Any:
    try:
        value = row[key]
    except (KeyError, IndexError) as exc:
        raise MalformedRecord(f"{kind} row is missing '{key}'") from exc
    if value is None:
        raise MalformedRecord(f"{kind} row has NULL '{key}'")
    return value


def _as_int(value: Any, key: str, kind: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecord(f"{kind}.{key} must be an integer, got {value!r}")
    return value


def _as_bool(value: Any, key: str, kind: str) -> bool:
    # sqlite 以 0/1 存布尔
    if value in (0, 1, True, False):
        return bool(value)
    raise MalformedRecord(f"{kind}.{key} must be 0/1, got {value!r}")


def session_from_row(row: Mapping[str, Any]) -> Session:
    kind = "session"
    chunk_count = _as_int(_require(row, "chunk_count", kind), "chunk_count", kind)
    index = _as_int(_require(row, "current_chunk_index", kind), "current_chunk_index", kind)
    completed = _as_bool(_require(row, "completed", kind), "completed", kind)
    if not 0 <= index <= chunk_count:
        raise MalformedRecord(f"session index {index} outside [0, {chunk_count}]")
    if completed != (index == chunk_count):
        raise MalformedRecord(
            f"session completed={completed} inconsistent with index {index}/{chunk_count}"
        )
    aware_raw = row["conversation_aware"] if "conversation_aware" in row.keys() else None
    try:
        conversation_type = ConversationType(row["conversation_type"] or ConversationType.STRUCTURED.value)
    except ValueError as exc:
        raise MalformedRecord(f"unknown conversation_type {row['conversation_type']!r}") from exc
    return Session(
        id=str(_require(row, "id", kind)),
        chunk_count=chunk_count,
        current_chunk_index=index,
        completed=completed,
        personalization_enabled=_as_bool(
            _require(row, "personalization_enabled", kind), "personalization_enabled", kind
        ),
        conversation_aware=None if aware_raw is None else _as_bool(aware_raw, "conversation_aware", kind),
        conversation_type=conversation_type,
        last_turn_key=row["last_turn_key"],
        last_response=row["last_response"],
        created_at=str(row["created_at"] or ""),
        updated_at=str(row["updated_at"] or ""),
    )


def chunk_from_row(row: Mapping[str, Any]) -> Chunk:
    kind = "chunk"
    return Chunk(
        id=str(_require(row, "id", kind)),
        order_index=_as_int(_require(row, "order_index", kind), "order_index", kind),
        title=str(row["title"] or ""),
        content=str(_require(row, "content", kind)),
        question=str(_require(row, "question", kind)),
    )


def response_from_row(row: Mapping[str, Any]) -> ResponseRecord:
    kind = "response"
    return ResponseRecord(
        id=_as_int(_require(row, "id", kind), "id", kind),
        session_id=str(_require(row, "session_id", kind)),
        chunk_id=str(_require(row, "chunk_id", kind)),
        user_reply=str(_require(row, "user_response", kind)),
        assistant_reply=str(_require(row, "ai_response", kind)),
        timestamp=str(row["timestamp"] or ""),
    )


def admin_defaults_from_row(row: Optional[Mapping[str, Any]]) -> AdminDefaults:
    if row is None:
        return AdminDefaults()
    kind = "admin_settings"

    def flag(key: str, default: bool) -> bool:
        value = row[key]
        return default if value is None else _as_bool(value, key, kind)

    return AdminDefaults(
        personalization_enabled=flag("personalization_enabled", False),
        conversation_aware=flag("conversation_aware", True),
        use_structured_conversation=flag("use_structured_conversation", True),
    )


def registry_entry_from_dict(data: Any) -> RegistryEntry:
    if not isinstance(data, dict):
        raise MalformedRecord("registry record must be a JSON object")
    session_id = data.get("frontendSessionId") or data.get("sessionId")
    if not isinstance(session_id, str) or not session_id.strip():
        raise MalformedRecord("registry record has no frontendSessionId")
    # therapistId 为旧字段名
    external_id = data.get("externalId") or data.get("therapistId")
    return RegistryEntry(
        frontend_session_id=session_id.strip(),
        external_id=str(external_id) if external_id else None,
        registered_at=str(data.get("registeredAt") or ""),
    )
