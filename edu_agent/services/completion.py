"""Completion: final message for a finished session, plus the report artifact.

Finishing the learning flow and producing the report are separate concerns; a
report failure only changes the wording of the closing message.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from edu_agent.models import ResponseRecord, Session
from edu_agent.services.journal import ResponseJournal
from edu_agent.services.report_service import ReportGenerator

logger = logging.getLogger(__name__)

COMPLETION_WITH_REPORT = (
    "Congratulations! You've completed the educational program. "
    "Your comprehensive report has been generated and is available for download."
)
COMPLETION_WITHOUT_REPORT = (
    "Congratulations! You've completed the educational program. Thank you for your participation!"
)


class CompletionHandler:
    def __init__(self, reports: ReportGenerator, journal: ResponseJournal, timeout: float = 10.0) -> None:
        self._reports = reports
        self._journal = journal
        self._timeout = timeout

    async def complete(self, session: Session, journal: Optional[Sequence[ResponseRecord]] = None) -> str:
        try:
            records = list(journal) if journal is not None else await asyncio.to_thread(
                self._journal.get_all, session.id
            )
            result = await asyncio.wait_for(
                self._reports.generate(session.id, records),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Report generation for session %s timed out after %.1fs", session.id, self._timeout)
            return COMPLETION_WITHOUT_REPORT
        except Exception:
            logger.exception("Report generation for session %s failed", session.id)
            return COMPLETION_WITHOUT_REPORT
        logger.info("Session %s completed; report %s at %s", session.id, result.report_id, result.report_path)
        return COMPLETION_WITH_REPORT
