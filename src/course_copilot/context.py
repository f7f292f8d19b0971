from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from fastapi import Header


@dataclass(frozen=True)
class RequestContext:
    """Immutable description of who is making the current request.

    Passed explicitly into service operations that enforce ownership, so no
    service needs to read ambient request state.
    """

    user_id: str
    request_id: str
    subject: Optional[str] = None


# Context variable storing the context for the in-flight request. Defaults to
# an anonymous "default" user so direct service calls in tests and scripts
# keep working without headers.
_current_context: ContextVar[Optional[RequestContext]] = ContextVar("current_request_context", default=None)


def system_context(user_id: str = "default") -> RequestContext:
    """Build a context for non-request callers (background jobs, scripts, tests)."""

    return RequestContext(user_id=user_id, request_id=f"system-{uuid4().hex[:12]}")


def get_current_context() -> RequestContext:
    """Return the context of the current request.

    In HTTP requests this is set by :func:`request_context_dependency`. In
    non-request contexts it falls back to a system context for user "default".
    """

    ctx = _current_context.get()
    if ctx is None:
        return system_context()
    return ctx


async def request_context_dependency(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
    x_request_id: Optional[str] = Header(None, alias="X-Request-ID"),
) -> RequestContext:
    """FastAPI dependency that establishes the request context.

    If the user header is absent, we fall back to the "default" user.
    """

    from src.course_copilot.security import get_current_subject

    ctx = RequestContext(
        user_id=x_user_id or "default",
        request_id=x_request_id or uuid4().hex,
        subject=get_current_subject(),
    )
    _current_context.set(ctx)
    return ctx
