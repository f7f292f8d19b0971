from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from src.course_copilot.domain.models.conversation_session import ConversationSession, SessionState, utcnow
from src.course_copilot.domain.models.lesson_draft import LessonDraft
from src.course_copilot.errors import PersistenceError, StaleSessionError
from src.course_copilot.infra.db.repositories import (
    SWEEPABLE_STATES,
    LessonDraftRepository,
    SessionRepository,
)

Clock = Callable[[], datetime]


class InMemorySessionRepository(SessionRepository):
    """Process-local session store.

    Sessions are copied on the way in and on the way out so callers never share
    an object with the store, mirroring a real database round trip.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        # session_id -> (stored copy, content fingerprint)
        self._rows: Dict[str, Tuple[ConversationSession, str]] = {}

    def create(self, session: ConversationSession) -> ConversationSession:
        with self._lock:
            if session.session_id in self._rows:
                raise PersistenceError("Session id already exists", session.session_id)
            now = self._clock()
            session.created_at = now
            session.updated_at = now
            session.version = 1
            self._rows[session.session_id] = (session.model_copy(deep=True), session.content_fingerprint())
            return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        with self._lock:
            row = self._rows.get(session_id)
            return row[0].model_copy(deep=True) if row else None

    def get_many(self, session_ids: Iterable[str]) -> Dict[str, ConversationSession]:
        with self._lock:
            return {
                sid: self._rows[sid][0].model_copy(deep=True)
                for sid in dict.fromkeys(session_ids)
                if sid in self._rows
            }

    def save(self, session: ConversationSession) -> bool:
        with self._lock:
            row = self._rows.get(session.session_id)
            if row is None:
                self.create(session)
                return True
            stored, stored_fingerprint = row
            if stored.version != session.version:
                raise StaleSessionError(
                    "Session was modified by another request",
                    session.session_id,
                    expected_version=session.version,
                    actual_version=stored.version,
                )
            fingerprint = session.content_fingerprint()
            session.updated_at = self._clock() if fingerprint != stored_fingerprint else stored.updated_at
            session.created_at = stored.created_at
            session.version = stored.version + 1
            self._rows[session.session_id] = (session.model_copy(deep=True), fingerprint)
            return True

    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        states: Optional[Iterable[SessionState]] = None,
    ) -> List[ConversationSession]:
        wanted = set(states) if states is not None else None
        with self._lock:
            matches = [
                stored
                for stored, _ in self._rows.values()
                if stored.user_id == user_id and (wanted is None or stored.state in wanted)
            ]
        matches.sort(key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in matches[offset : offset + limit]]

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._rows.pop(session_id, None) is not None

    def _idle(self, cutoff: datetime) -> List[ConversationSession]:
        rows = [
            stored
            for stored, _ in self._rows.values()
            if stored.state in SWEEPABLE_STATES and stored.updated_at < cutoff
        ]
        rows.sort(key=lambda s: s.updated_at)
        return rows

    def list_active_older_than(self, idle: timedelta, *, limit: Optional[int] = None) -> List[str]:
        with self._lock:
            rows = self._idle(self._clock() - idle)
        if limit is not None:
            rows = rows[:limit]
        return [s.session_id for s in rows]

    def batch_abandon(
        self, session_ids: Iterable[str], reason: str, *, idle: Optional[timedelta] = None
    ) -> List[str]:
        abandoned: List[str] = []
        now = self._clock()
        cutoff = now - idle if idle is not None else None
        with self._lock:
            for sid in dict.fromkeys(session_ids):
                row = self._rows.get(sid)
                if row is None or row[0].state not in SWEEPABLE_STATES:
                    continue
                stored, fingerprint = row
                if cutoff is not None and stored.updated_at >= cutoff:
                    continue
                stored.state = SessionState.ABANDONED
                stored.metadata = {**stored.metadata, "abandon_reason": reason, "abandoned_at": now.isoformat()}
                stored.version += 1
                self._rows[sid] = (stored, fingerprint)
                abandoned.append(sid)
        return abandoned

    def list_needing_autosave(self, grace: timedelta, *, limit: int) -> List[ConversationSession]:
        cutoff = self._clock() - grace
        with self._lock:
            rows = [
                stored
                for stored, _ in self._rows.values()
                if stored.state == SessionState.ACTIVE
                and stored.updated_at < cutoff
                and (stored.autosaved_at is None or stored.autosaved_at < stored.updated_at)
            ]
        rows.sort(key=lambda s: s.updated_at)
        return [s.model_copy(deep=True) for s in rows[:limit]]

    def list_idle_between(
        self, warning: timedelta, hard: timedelta, *, limit: Optional[int] = None
    ) -> List[ConversationSession]:
        now = self._clock()
        with self._lock:
            rows = [s for s in self._idle(now - warning) if s.updated_at >= now - hard]
        if limit is not None:
            rows = rows[:limit]
        return [s.model_copy(deep=True) for s in rows]

    def count_active_for_user(self, user_id: str) -> int:
        with self._lock:
            return sum(
                1
                for stored, _ in self._rows.values()
                if stored.user_id == user_id and stored.state == SessionState.ACTIVE
            )

    def oldest_active_for_user(self, user_id: str) -> Optional[ConversationSession]:
        with self._lock:
            rows = [
                stored
                for stored, _ in self._rows.values()
                if stored.user_id == user_id and stored.state == SessionState.ACTIVE
            ]
        if not rows:
            return None
        return min(rows, key=lambda s: s.updated_at).model_copy(deep=True)

    def touch(self, session_id: str) -> bool:
        with self._lock:
            row = self._rows.get(session_id)
            if row is None:
                return False
            row[0].updated_at = self._clock()
            row[0].version += 1
            return True


class InMemoryLessonDraftRepository(LessonDraftRepository):
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._drafts: Dict[Tuple[str, str, str], LessonDraft] = {}

    def upsert(
        self,
        session_id: str,
        section_id: str,
        lesson_id: str,
        content: str,
        order_index: int = 0,
    ) -> LessonDraft:
        key = (session_id, section_id, lesson_id)
        now = self._clock()
        with self._lock:
            existing = self._drafts.get(key)
            draft = LessonDraft(
                session_id=session_id,
                section_id=section_id,
                lesson_id=lesson_id,
                content=content,
                order_index=order_index,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._drafts[key] = draft
            return draft.model_copy()

    def get(self, session_id: str, section_id: str, lesson_id: str) -> Optional[LessonDraft]:
        with self._lock:
            draft = self._drafts.get((session_id, section_id, lesson_id))
            return draft.model_copy() if draft else None

    def list_for_session(self, session_id: str) -> List[LessonDraft]:
        with self._lock:
            drafts = [d.model_copy() for d in self._drafts.values() if d.session_id == session_id]
        drafts.sort(key=lambda d: (d.section_id, d.order_index))
        return drafts

    def delete(self, session_id: str, section_id: str, lesson_id: str) -> bool:
        with self._lock:
            return self._drafts.pop((session_id, section_id, lesson_id), None) is not None

    def _delete_where(self, predicate: Callable[[LessonDraft], bool]) -> int:
        with self._lock:
            keys = [key for key, draft in self._drafts.items() if predicate(draft)]
            for key in keys:
                del self._drafts[key]
            return len(keys)

    def delete_section(self, session_id: str, section_id: str) -> int:
        return self._delete_where(lambda d: d.session_id == session_id and d.section_id == section_id)

    def delete_session(self, session_id: str) -> int:
        return self._delete_where(lambda d: d.session_id == session_id)

    def update_order(self, session_id: str, section_id: str, lesson_id: str, order_index: int) -> bool:
        with self._lock:
            draft = self._drafts.get((session_id, section_id, lesson_id))
            if draft is None:
                return False
            draft.order_index = order_index
            draft.updated_at = self._clock()
            return True


session_repository: SessionRepository = InMemorySessionRepository()
draft_repository: LessonDraftRepository = InMemoryLessonDraftRepository()
