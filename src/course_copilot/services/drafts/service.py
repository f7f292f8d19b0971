from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from src.course_copilot.context import RequestContext
from src.course_copilot.domain.models.conversation_session import ConversationSession
from src.course_copilot.domain.models.course_outline import CourseOutline, OutlineLesson, OutlineSection
from src.course_copilot.domain.models.lesson_draft import LessonDraft
from src.course_copilot.errors import InvalidInputError, NotFoundError
from src.course_copilot.infra.db import inmemory as inmemory_repos
from src.course_copilot.infra.db.repositories import LessonDraftRepository

if TYPE_CHECKING:
    from src.course_copilot.services.sessions.service import SessionService

logger = logging.getLogger("drafts")

SCHEME_POSITIONAL = "positional"
SCHEME_LEGACY = "legacy"
SCHEME_EXPLICIT = "explicit"

_LEGACY_SECTION_RE = re.compile(r"^section_(\d+)$")
_LEGACY_LESSON_RE = re.compile(r"^lesson_(\d+)_(\d+)$")

Position = Tuple[int, int]


def candidate_keys(
    section_index: int,
    lesson_index: int,
    section: Optional[OutlineSection] = None,
    lesson: Optional[OutlineLesson] = None,
) -> List[Tuple[str, str, str]]:
    """Draft addresses to try for one lesson, in lookup order.

    1. zero-based positions, as the authoring client sends them ("0", "1")
    2. the legacy one-based scheme ("section_1", "lesson_1_2")
    3. explicit ``id`` fields on the section and lesson, cast to strings
    """

    keys = [
        (SCHEME_POSITIONAL, str(section_index), str(lesson_index)),
        (SCHEME_LEGACY, f"section_{section_index + 1}", f"lesson_{section_index + 1}_{lesson_index + 1}"),
    ]
    if section is not None and lesson is not None and section.id is not None and lesson.id is not None:
        keys.append((SCHEME_EXPLICIT, str(section.id), str(lesson.id)))

    seen = set()
    unique = []
    for scheme, section_id, lesson_id in keys:
        if (section_id, lesson_id) in seen:
            continue
        seen.add((section_id, lesson_id))
        unique.append((scheme, section_id, lesson_id))
    return unique


def parse_position(section_id: str, lesson_id: str) -> Optional[Tuple[str, Position]]:
    """Recover (scheme, (section_index, lesson_index)) from a position-based address."""

    if section_id.isdigit() and lesson_id.isdigit():
        return SCHEME_POSITIONAL, (int(section_id), int(lesson_id))
    section_match = _LEGACY_SECTION_RE.match(section_id)
    lesson_match = _LEGACY_LESSON_RE.match(lesson_id)
    if section_match and lesson_match and section_match.group(1) == lesson_match.group(1):
        return SCHEME_LEGACY, (int(lesson_match.group(1)) - 1, int(lesson_match.group(2)) - 1)
    return None


def format_position(scheme: str, position: Position) -> Tuple[str, str]:
    section_index, lesson_index = position
    if scheme == SCHEME_POSITIONAL:
        return str(section_index), str(lesson_index)
    return f"section_{section_index + 1}", f"lesson_{section_index + 1}_{lesson_index + 1}"


@dataclass
class MappingReport:
    matched: List[Dict[str, object]] = field(default_factory=list)
    missed: List[Dict[str, object]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "matched": self.matched,
            "missed": self.missed,
            "matched_count": len(self.matched),
            "missed_count": len(self.missed),
        }


class DraftService:
    """Per-lesson draft storage and reconciliation into a course outline."""

    def __init__(
        self,
        repository: Optional[LessonDraftRepository] = None,
        *,
        sessions: Optional[SessionService] = None,
    ) -> None:
        self._repository = repository or inmemory_repos.draft_repository
        self._sessions = sessions

    def use_repository(self, repository: LessonDraftRepository) -> None:
        self._repository = repository

    @staticmethod
    def _require(value: object, name: str, session_id: Optional[str] = None) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise InvalidInputError(f"{name} is required", session_id)
        return text

    # Storage

    def save_draft(
        self,
        session_id: str,
        section_id: str,
        lesson_id: str,
        content: str,
        order_index: int = 0,
    ) -> LessonDraft:
        session_id = self._require(session_id, "session_id")
        section_id = self._require(section_id, "section_id", session_id)
        lesson_id = self._require(lesson_id, "lesson_id", session_id)
        if content is None:
            raise InvalidInputError("content is required", session_id)
        draft = self._repository.upsert(session_id, section_id, lesson_id, content, order_index)
        logger.debug("Saved draft %s/%s for session %s", section_id, lesson_id, session_id)
        return draft

    def get_draft(self, session_id: str, section_id: str, lesson_id: str) -> Optional[LessonDraft]:
        return self._repository.get(session_id, str(section_id), str(lesson_id))

    def get_session_drafts(self, session_id: str) -> List[LessonDraft]:
        return self._repository.list_for_session(session_id)

    def group_session_drafts(self, session_id: str) -> Dict[str, Dict[str, LessonDraft]]:
        grouped: Dict[str, Dict[str, LessonDraft]] = {}
        for draft in self.get_session_drafts(session_id):
            grouped.setdefault(draft.section_id, {})[draft.lesson_id] = draft
        return grouped

    def delete_draft(self, session_id: str, section_id: str, lesson_id: str) -> bool:
        return self._repository.delete(session_id, str(section_id), str(lesson_id))

    def delete_section_drafts(self, session_id: str, section_id: str) -> int:
        return self._repository.delete_section(session_id, str(section_id))

    def delete_session_drafts(self, session_id: str) -> int:
        removed = self._repository.delete_session(session_id)
        if removed:
            logger.info("Deleted %d drafts for session %s", removed, session_id)
        return removed

    def update_order(self, session_id: str, section_id: str, lesson_ids: Sequence[str]) -> int:
        """Set ``order_index`` of each listed lesson to its position in ``lesson_ids``."""

        updated = 0
        for index, lesson_id in enumerate(lesson_ids):
            if self._repository.update_order(session_id, str(section_id), str(lesson_id), index):
                updated += 1
        return updated

    # Reconciliation

    def map_drafts_to_structure(self, session_id: str, outline: CourseOutline) -> Tuple[CourseOutline, MappingReport]:
        """Return a copy of ``outline`` with lesson content filled from drafts.

        Each lesson takes the first draft found under :func:`candidate_keys`.
        Lessons without a draft keep whatever content they had. The input
        outline is never modified, so applying this twice gives the same result.
        """

        drafts = {(d.section_id, d.lesson_id): d for d in self.get_session_drafts(session_id)}
        mapped = outline.model_copy(deep=True)
        report = MappingReport()

        for section_index, section in enumerate(mapped.sections):
            for lesson_index, lesson in enumerate(section.lessons):
                for scheme, section_id, lesson_id in candidate_keys(section_index, lesson_index, section, lesson):
                    draft = drafts.get((section_id, lesson_id))
                    if draft is None:
                        continue
                    lesson.content = draft.content
                    report.matched.append(
                        {
                            "section_index": section_index,
                            "lesson_index": lesson_index,
                            "section_id": section_id,
                            "lesson_id": lesson_id,
                            "scheme": scheme,
                        }
                    )
                    break
                else:
                    report.missed.append(
                        {
                            "section_index": section_index,
                            "lesson_index": lesson_index,
                            "lesson_title": lesson.title,
                        }
                    )

        if report.missed:
            logger.info(
                "Session %s: %d lessons without drafts (%d matched)",
                session_id,
                len(report.missed),
                len(report.matched),
            )
        return mapped, report

    # Outline node edits

    def _rekey(self, session_id: str, moves: Dict[Position, Position]) -> int:
        """Move position-addressed drafts to their new positions."""

        pending = []
        for draft in self.get_session_drafts(session_id):
            parsed = parse_position(draft.section_id, draft.lesson_id)
            if parsed is None:
                continue
            scheme, position = parsed
            target = moves.get(position)
            if target is None or target == position:
                continue
            pending.append((draft, format_position(scheme, target)))

        # Delete first so a move never lands on a key that is about to move away.
        for draft, _ in pending:
            self._repository.delete(session_id, draft.section_id, draft.lesson_id)
        for draft, (section_id, lesson_id) in pending:
            self._repository.upsert(session_id, section_id, lesson_id, draft.content, draft.order_index)
        return len(pending)

    @property
    def sessions(self) -> SessionService:
        if self._sessions is None:
            from src.course_copilot.services.sessions.service import session_service

            return session_service
        return self._sessions

    def _load_outline(self, ctx: RequestContext, session_id: str) -> Tuple[ConversationSession, CourseOutline]:
        from src.course_copilot.services.sessions.service import Capability

        session = self.sessions.load_session(session_id, ctx, capability=Capability.EDIT_DRAFTS)
        if session.outline is None:
            raise NotFoundError("Session has no course outline", session_id)
        return session, session.outline.model_copy(deep=True)

    def _store_outline(self, session: ConversationSession, outline: CourseOutline) -> ConversationSession:
        session.set_outline(outline)
        return self.sessions.save_session(session)

    def remove_lesson(
        self, ctx: RequestContext, session_id: str, section_index: int, lesson_index: int
    ) -> ConversationSession:
        session, outline = self._load_outline(ctx, session_id)
        if not 0 <= section_index < len(outline.sections):
            raise NotFoundError(f"Section {section_index} does not exist", session_id)
        section = outline.sections[section_index]
        if not 0 <= lesson_index < len(section.lessons):
            raise NotFoundError(f"Lesson {lesson_index} does not exist", session_id)

        lesson = section.lessons.pop(lesson_index)
        for _, section_id, lesson_id in candidate_keys(section_index, lesson_index, section, lesson):
            self._repository.delete(session_id, section_id, lesson_id)
        self._rekey(
            session_id,
            {
                (section_index, old): (section_index, old - 1)
                for old in range(lesson_index + 1, len(section.lessons) + 1)
            },
        )
        return self._store_outline(session, outline)

    def remove_section(self, ctx: RequestContext, session_id: str, section_index: int) -> ConversationSession:
        session, outline = self._load_outline(ctx, session_id)
        if not 0 <= section_index < len(outline.sections):
            raise NotFoundError(f"Section {section_index} does not exist", session_id)

        section = outline.sections.pop(section_index)
        for lesson_index, lesson in enumerate(section.lessons):
            for _, section_id, lesson_id in candidate_keys(section_index, lesson_index, section, lesson):
                self._repository.delete(session_id, section_id, lesson_id)
        self._repository.delete_section(session_id, str(section_index))
        self._repository.delete_section(session_id, f"section_{section_index + 1}")

        moves: Dict[Position, Position] = {}
        for new_index in range(section_index, len(outline.sections)):
            for lesson_index in range(len(outline.sections[new_index].lessons)):
                moves[(new_index + 1, lesson_index)] = (new_index, lesson_index)
        self._rekey(session_id, moves)
        return self._store_outline(session, outline)

    def reorder_sections(self, ctx: RequestContext, session_id: str, order: Sequence[int]) -> ConversationSession:
        """Reorder sections; ``order[k]`` is the old index of the section placed at ``k``."""

        session, outline = self._load_outline(ctx, session_id)
        if sorted(order) != list(range(len(outline.sections))):
            raise InvalidInputError("Order must list every section index exactly once", session_id)

        old_sections = outline.sections
        outline.sections = [old_sections[old] for old in order]
        moves: Dict[Position, Position] = {}
        for new_index, old_index in enumerate(order):
            for lesson_index in range(len(old_sections[old_index].lessons)):
                moves[(old_index, lesson_index)] = (new_index, lesson_index)
        self._rekey(session_id, moves)
        return self._store_outline(session, outline)


draft_service = DraftService()
