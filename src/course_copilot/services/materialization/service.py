from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Union

from src.course_copilot.context import RequestContext
from src.course_copilot.domain.models.conversation_session import SessionState
from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.errors import InvalidInputError, SessionStateError
from src.course_copilot.services.audit.service import audit_service
from src.course_copilot.services.chat.extractor import is_ready
from src.course_copilot.services.drafts.service import DraftService, draft_service
from src.course_copilot.services.sessions.service import Capability, SessionService, session_service

logger = logging.getLogger("materialization")


class CourseGenerator(Protocol):
    """Turns an accepted outline into real course content on the host platform.

    Returns ``{"success": True, "id", "edit_url", "preview_url"}`` or
    ``{"success": False, "error"}``.
    """

    def create_course(self, outline: CourseOutline, user_id: str) -> Dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError


class DemoCourseGenerator:
    """Keeps created courses in memory and hands out sequential ids."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.courses: Dict[int, Dict[str, Any]] = {}

    def create_course(self, outline: CourseOutline, user_id: str) -> Dict[str, Any]:
        if not outline.sections:
            return {"success": False, "error": "Course must contain at least one section"}
        with self._lock:
            course_id = next(self._ids)
            self.courses[course_id] = {"owner": user_id, "outline": outline.model_dump(exclude_none=True)}
        return {
            "success": True,
            "id": course_id,
            "edit_url": f"/courses/{course_id}/edit",
            "preview_url": f"/courses/{course_id}",
        }


@dataclass
class MaterializationResult:
    success: bool
    course_id: Optional[Union[int, str]] = None
    edit_url: Optional[str] = None
    preview_url: Optional[str] = None
    error: Optional[str] = None
    mapping: Dict[str, Any] = field(default_factory=dict)


class MaterializationService:
    def __init__(
        self,
        generator: Optional[CourseGenerator] = None,
        *,
        sessions: Optional[SessionService] = None,
        drafts: Optional[DraftService] = None,
    ) -> None:
        self._generator = generator or DemoCourseGenerator()
        self._sessions = sessions or session_service
        self._drafts = drafts or draft_service

    def use_generator(self, generator: CourseGenerator) -> None:
        self._generator = generator

    def materialize(
        self,
        ctx: RequestContext,
        session_id: str,
        outline: Optional[Union[CourseOutline, Dict[str, Any]]] = None,
    ) -> MaterializationResult:
        """Create the course for a ready session.

        Drafts are merged into the outline first. On success the session is
        completed and its drafts are removed. On failure nothing changes and
        the session stays active.
        """

        session = self._sessions.load_session(session_id, ctx, capability=Capability.MATERIALIZE)
        if session.state != SessionState.ACTIVE:
            raise SessionStateError(
                f"Only active sessions can create a course (session is {session.state.value})",
                session_id,
            )

        if isinstance(outline, dict):
            outline = CourseOutline.model_validate(outline)
        outline = outline or session.outline
        if not is_ready(outline):
            raise InvalidInputError("Course outline needs a title and at least one lesson", session_id)

        mapped, report = self._drafts.map_drafts_to_structure(session_id, outline)

        try:
            result = self._generator.create_course(mapped, session.user_id)
        except Exception as exc:
            logger.exception("Course generator failed for session %s", session_id)
            result = {"success": False, "error": str(exc) or "Course creation failed"}

        if not result.get("success"):
            error = result.get("error") or "Course creation failed"
            audit_service.log_event(
                action="materialize_failed",
                resource_type="session",
                resource_id=session_id,
                user_id=ctx.user_id,
            )
            return MaterializationResult(success=False, error=error, mapping=report.as_dict())

        course_id = result.get("id")
        session.set_outline(mapped)
        session.set_title(f"Course: {mapped.title}")
        session.complete(
            {
                "course_id": course_id,
                "edit_url": result.get("edit_url"),
                "preview_url": result.get("preview_url"),
            }
        )
        self._sessions.save_session(session)
        self._drafts.delete_session_drafts(session_id)

        audit_service.log_event(
            action="materialize",
            resource_type="course",
            resource_id=str(course_id),
            user_id=ctx.user_id,
            extra={"session_id": session_id, "lessons": mapped.lesson_count(), "drafts_used": len(report.matched)},
        )
        return MaterializationResult(
            success=True,
            course_id=course_id,
            edit_url=result.get("edit_url"),
            preview_url=result.get("preview_url"),
            mapping=report.as_dict(),
        )


materialization_service = MaterializationService()
