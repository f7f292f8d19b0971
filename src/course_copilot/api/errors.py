"""
Mapping of core errors onto HTTP responses.

Route handlers are wrapped with :func:`handle_copilot_errors` so every
endpoint reports failures with the same shape:
``{"error": <kind>, "message": <text>, "session_id": <id or null>}``.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException, status
from pydantic import ValidationError

from src.course_copilot.errors import (
    AccessDeniedError,
    CopilotError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    SessionStateError,
    StaleSessionError,
    UpstreamError,
)

logger = logging.getLogger("api")

F = TypeVar("F", bound=Callable[..., Any])

# Shown in the chat window when the model call fails; the user can retry.
UPSTREAM_CHAT_MESSAGE = "Sorry, I could not reach the AI service. Please try sending your message again."


def error_detail(exc: CopilotError) -> dict:
    detail = {"error": exc.kind, "message": exc.message, "session_id": exc.session_id}
    if isinstance(exc, UpstreamError):
        detail["timed_out"] = exc.timed_out
        detail["chat_message"] = UPSTREAM_CHAT_MESSAGE
        detail["retryable"] = True
    return detail


def status_for(exc: CopilotError) -> int:
    if isinstance(exc, (StaleSessionError, SessionStateError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, InvalidInputError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, AccessDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, UpstreamError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, PersistenceError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def handle_copilot_errors(func: F) -> F:
    """Turn core exceptions raised by a route handler into HTTPExceptions."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except HTTPException:
            raise
        except CopilotError as exc:
            code = status_for(exc)
            log = logger.error if code >= 500 else logger.warning
            log("%s error: %s", exc.kind, exc.message, extra={"session_id": exc.session_id})
            raise HTTPException(status_code=code, detail=error_detail(exc)) from exc
        except ValidationError as exc:
            logger.warning("Payload validation error: %s", exc.error_count())
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

    return wrapper  # type: ignore[return-value]
