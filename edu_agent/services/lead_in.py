"""Conversation-aware lead-ins: one or two sentences bridging the last exchange and the next chunk.

This is an enhancement, not a correctness step: every failure mode collapses to
``None`` and the caller simply delivers the chunk without a transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from edu_agent.models import AdminDefaults, ResponseRecord, Session
from edu_agent.prompts import load_prompt
from edu_agent.services.llm_service import LLMClient
from edu_agent.utils.text import preview, strip_lead_in_label

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class LeadInGenerator:
    def __init__(self, llm: LLMClient, timeout: float = 4.0) -> None:
        self._llm = llm
        self._timeout = timeout

    @staticmethod
    def is_enabled(session: Session, defaults: AdminDefaults) -> bool:
        """Session override wins; NULL on the session means the admin default."""
        if session.conversation_aware is not None:
            return session.conversation_aware
        return defaults.conversation_aware

    async def generate(self, last_record: Optional[ResponseRecord], upcoming_content: str) -> Optional[str]:
        if last_record is None:
            return None
        tpl = load_prompt("lead_in")
        messages = [
            {
                "role": "user",
                "content": tpl.user(
                    user_reply=last_record.user_reply,
                    assistant_reply=last_record.assistant_reply,
                    preview=preview(upcoming_content, PREVIEW_CHARS),
                ),
            }
        ]
        try:
            raw = await asyncio.wait_for(
                self._llm.send_message(messages, tpl.system(), temperature=0.7, max_tokens=120),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Lead-in generation timed out after %.1fs; continuing without it", self._timeout)
            return None
        except Exception as exc:
            logger.warning("Lead-in generation failed (%s: %s); continuing without it", type(exc).__name__, exc)
            return None
        if not isinstance(raw, str):
            logger.warning("Lead-in generation returned %s, expected text", type(raw).__name__)
            return None
        text = strip_lead_in_label(raw)
        return text or None

    async def for_session(
        self,
        session: Session,
        defaults: AdminDefaults,
        records: List[ResponseRecord],
        upcoming_content: str,
    ) -> Optional[str]:
        """Skip rules first: no history yet, or conversation awareness switched off."""
        if not records:
            return None
        if not self.is_enabled(session, defaults):
            return None
        return await self.generate(records[-1], upcoming_content)
