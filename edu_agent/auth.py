"""Shared-secret check for calls from the voice platform and the front end.

The platform's "custom LLM" integration sends its configured secret as a
bearer token. With ``EDU_AGENT_API_KEY`` unset the service runs open, which is
how local development and the test suite use it.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from edu_agent.config import settings

_platform_secret = HTTPBearer(auto_error=False)


def secret_matches(presented: Optional[str], expected: str) -> bool:
    if not presented:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_platform_secret),
) -> None:
    expected = settings.api_key
    if not expected:
        return
    presented = credentials.credentials if credentials is not None else None
    if not secret_matches(presented, expected):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: the webhook secret is missing or wrong",
            headers={"WWW-Authenticate": "Bearer"},
        )
