"""Admin defaults applied to new sessions."""

from __future__ import annotations

from edu_agent.db import Database
from edu_agent.models import AdminDefaults, admin_defaults_from_row


class AdminConfig:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get_defaults(self) -> AdminDefaults:
        row = self._db.fetch_one(
            """
            SELECT personalization_enabled, conversation_aware, use_structured_conversation
            FROM admin_settings
            WHERE id = 'default'
            """
        )
        return admin_defaults_from_row(row)
