from __future__ import annotations

import hashlib
import hmac
from contextvars import ContextVar
from typing import FrozenSet, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.course_copilot.config import settings

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Hashed key of the authenticated caller. Audit lines carry this, never the key.
_current_subject: ContextVar[Optional[str]] = ContextVar("copilot_subject", default=None)


def get_current_subject() -> Optional[str]:
    return _current_subject.get()


def subject_for_key(api_key: str) -> str:
    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return f"key:{digest[:16]}"


def configured_keys(raw: Optional[str] = None) -> FrozenSet[str]:
    """Parse the comma-separated ``API_KEYS`` value, ignoring blank entries."""

    value = settings.api_keys if raw is None else raw
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def _matches(candidate: str, keys: FrozenSet[str]) -> bool:
    return any(hmac.compare_digest(candidate, key) for key in keys)


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """Router dependency guarding every copilot endpoint except health.

    With ``ENABLE_API_AUTH`` off this accepts every caller and records no
    subject.
    """

    if not settings.enable_api_auth:
        _current_subject.set(None)
        return ""

    keys = configured_keys()
    if not keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Copilot API auth is enabled but API_KEYS is empty.",
        )
    if not api_key or not _matches(api_key, keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )

    _current_subject.set(subject_for_key(api_key))
    return api_key
