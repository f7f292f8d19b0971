from datetime import datetime, timedelta, timezone

import pytest

from src.course_copilot.context import system_context
from src.course_copilot.infra.db.inmemory import InMemoryLessonDraftRepository, InMemorySessionRepository
from src.course_copilot.services.drafts.service import DraftService
from src.course_copilot.services.sessions.service import SessionService


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_repo(clock):
    return InMemorySessionRepository(clock=clock)


@pytest.fixture
def draft_repo(clock):
    return InMemoryLessonDraftRepository(clock=clock)


@pytest.fixture
def sessions(session_repo, draft_repo) -> SessionService:
    return SessionService(session_repo, draft_repo)


@pytest.fixture
def drafts(draft_repo, sessions) -> DraftService:
    return DraftService(draft_repo, sessions=sessions)


@pytest.fixture
def ctx():
    return system_context("alice")
