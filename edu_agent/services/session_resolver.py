"""Best-effort mapping from an inbound turn to a session.

Resolution order:

1. the conversation id carried by the turn (header or body), used directly as
   the session key when such a session exists;
2. the "latest session" registry written by the front end. The registry is
   eventually consistent: the first turn can arrive before the front end's
   write lands, so it is read with bounded exponential backoff (100 ms, 200 ms,
   ... for ``max_attempts`` attempts).

Failure is never fatal: ``resolve`` returns ``None`` and the caller drops to
open-ended mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from edu_agent.db import PersistenceFailure
from edu_agent.models import MalformedRecord, RegistryEntry, registry_entry_from_dict
from edu_agent.services.session_store import ConversationSessionStore

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "registry_latest.json"


class ResolutionFailure(LookupError):
    """The registry could not be read after all retries."""


@dataclass(frozen=True)
class ResolvedSession:
    session_id: str
    external_id: Optional[str]
    source: str  # "conversation_id" | "registry"


class SessionRegistry:
    """File-backed side channel holding the most recently registered front-end session."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def path(self) -> Path:
        return self._dir / REGISTRY_FILENAME

    def read_latest(self) -> RegistryEntry:
        """Raise FileNotFoundError / MalformedRecord when nothing usable is there yet."""
        raw = self.path.read_text(encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            # 写入过程中被读到半截文件
            raise MalformedRecord(f"registry file is not valid JSON: {exc}") from exc
        return registry_entry_from_dict(data)

    def register(self, frontend_session_id: str, external_id: Optional[str] = None) -> RegistryEntry:
        entry = RegistryEntry(
            frontend_session_id=frontend_session_id,
            external_id=external_id,
            registered_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        payload = {
            "frontendSessionId": entry.frontend_session_id,
            "externalId": entry.external_id,
            "registeredAt": entry.registered_at,
        }
        self._dir.mkdir(parents=True, exist_ok=True)
        # 先写临时文件再 os.replace，读者不会看到半截 JSON
        fd, tmp = tempfile.mkstemp(prefix=".registry-", suffix=".json", dir=str(self._dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info("Registry updated: frontendSessionId=%s externalId=%s", frontend_session_id, external_id)
        return entry


class SessionResolver:
    def __init__(
        self,
        store: ConversationSessionStore,
        registry: SessionRegistry,
        max_attempts: int = 3,
        base_delay: float = 0.1,
    ) -> None:
        self._store = store
        self._registry = registry
        self._max_attempts = max(1, max_attempts)
        self._base_delay = max(0.0, base_delay)

    async def resolve(self, conversation_id: Optional[str] = None) -> Optional[ResolvedSession]:
        if conversation_id:
            try:
                session = await asyncio.to_thread(self._store.get, conversation_id)
            except (PersistenceFailure, MalformedRecord) as exc:
                logger.warning("Lookup by conversation id %s failed: %s", conversation_id, exc)
                session = None
            if session is not None:
                logger.info("Session resolved from conversation id %s", conversation_id)
                return ResolvedSession(session_id=conversation_id, external_id=conversation_id, source="conversation_id")
            logger.info("No session stored under conversation id %s; trying registry", conversation_id)
        try:
            entry = await self._read_registry_with_retry()
        except ResolutionFailure as exc:
            logger.warning("Session resolution failed: %s", exc)
            return None
        return ResolvedSession(
            session_id=entry.frontend_session_id,
            external_id=entry.external_id,
            source="registry",
        )

    async def _read_registry_with_retry(self) -> RegistryEntry:
        # wait_exponential: base * 2 ** (attempt - 1) -> 100ms, 200ms, 400ms ...
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((FileNotFoundError, MalformedRecord)),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, exp_base=2, min=0, max=60),
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    entry = self._registry.read_latest()
                    logger.info(
                        "Registry session %s found (attempt %d)",
                        entry.frontend_session_id, attempt.retry_state.attempt_number,
                    )
                    return entry
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise ResolutionFailure(
                f"no registry entry after {self._max_attempts} attempt(s): {last!r}"
            ) from last
        except OSError as exc:
            raise ResolutionFailure(f"registry unreadable: {exc!r}") from exc
        raise ResolutionFailure("registry retry loop ended without a result")
