"""
Error taxonomy for the authoring core.

Every error carries a human-readable message and, when known, the session it
relates to, so that the request layer can render a user-facing message
without inspecting internals.
"""

from __future__ import annotations

from typing import Optional


class CopilotError(Exception):
    """Base class for all errors raised by the authoring core."""

    kind = "internal"

    def __init__(self, message: str, session_id: Optional[str] = None) -> None:
        self.message = message
        self.session_id = session_id
        super().__init__(self.message)


class InvalidInputError(CopilotError):
    """A required field is missing or empty (message text, session id, ...)."""

    kind = "validation"


class SessionStateError(InvalidInputError):
    """The operation is not allowed in the session's current lifecycle state."""


class NotFoundError(CopilotError):
    """Unknown session or draft."""

    kind = "not_found"


class AccessDeniedError(CopilotError):
    """The caller does not own the session and holds no matching capability."""

    kind = "permission"


class UpstreamError(CopilotError):
    """The language model call failed, timed out or returned an error payload."""

    kind = "upstream"

    def __init__(self, message: str, session_id: Optional[str] = None, *, timed_out: bool = False) -> None:
        super().__init__(message, session_id)
        self.timed_out = timed_out


class ExtractionError(CopilotError):
    """A fenced structured block could not be parsed.

    Never surfaced to callers: extraction degrades to plain chat handling.
    """

    kind = "extraction"


class PersistenceError(CopilotError):
    """A store write failed; the change is not durable."""

    kind = "persistence"


class StaleSessionError(PersistenceError):
    """The session was changed by someone else since it was loaded."""

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ) -> None:
        super().__init__(message, session_id)
        self.expected_version = expected_version
        self.actual_version = actual_version
