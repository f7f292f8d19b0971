from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from src.course_copilot.domain.models.conversation_session import ConversationSession, SessionState
from src.course_copilot.domain.models.lesson_draft import LessonDraft

# States swept by the idle timeout and counted against the per-user limit.
SWEEPABLE_STATES = (SessionState.ACTIVE, SessionState.PAUSED)


class SessionRepository(ABC):
    """Durable storage for conversation sessions.

    ``save`` owns the ``updated_at`` discipline: the timestamp moves only when
    the content fingerprint changes. Every successful write increments
    ``version``; a save carrying a stale version is rejected.
    """

    @abstractmethod
    def create(self, session: ConversationSession) -> ConversationSession:
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> Optional[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def get_many(self, session_ids: Iterable[str]) -> Dict[str, ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def save(self, session: ConversationSession) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        states: Optional[Iterable[SessionState]] = None,
    ) -> List[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_active_older_than(self, idle: timedelta, *, limit: Optional[int] = None) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def batch_abandon(
        self, session_ids: Iterable[str], reason: str, *, idle: Optional[timedelta] = None
    ) -> List[str]:
        """Abandon the given sweepable sessions and return the ids actually abandoned.

        With ``idle`` set, a session is only abandoned if its ``updated_at`` is
        still older than now minus ``idle`` at the time of the write.
        """
        raise NotImplementedError

    @abstractmethod
    def list_needing_autosave(self, grace: timedelta, *, limit: int) -> List[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def list_idle_between(
        self, warning: timedelta, hard: timedelta, *, limit: Optional[int] = None
    ) -> List[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def count_active_for_user(self, user_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def oldest_active_for_user(self, user_id: str) -> Optional[ConversationSession]:
        raise NotImplementedError

    @abstractmethod
    def touch(self, session_id: str) -> bool:
        raise NotImplementedError


class LessonDraftRepository(ABC):
    @abstractmethod
    def upsert(
        self,
        session_id: str,
        section_id: str,
        lesson_id: str,
        content: str,
        order_index: int = 0,
    ) -> LessonDraft:
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str, section_id: str, lesson_id: str) -> Optional[LessonDraft]:
        raise NotImplementedError

    @abstractmethod
    def list_for_session(self, session_id: str) -> List[LessonDraft]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, session_id: str, section_id: str, lesson_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_section(self, session_id: str, section_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def delete_session(self, session_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def update_order(self, session_id: str, section_id: str, lesson_id: str, order_index: int) -> bool:
        raise NotImplementedError
