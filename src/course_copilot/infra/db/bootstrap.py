from __future__ import annotations

import logging
from typing import Optional

from src.course_copilot.config import settings
from src.course_copilot.infra.db import inmemory as inmemory_repos
from src.course_copilot.infra.db.models import Base
from src.course_copilot.infra.db.repositories import LessonDraftRepository, SessionRepository
from src.course_copilot.infra.db.session import create_db_engine, create_sqlalchemy_session_factory
from src.course_copilot.infra.db.sql_drafts import SqlLessonDraftRepository
from src.course_copilot.infra.db.sql_sessions import SqlSessionRepository

logger = logging.getLogger("sessions")


def bind_repositories(sessions: SessionRepository, drafts: LessonDraftRepository) -> None:
    """Point the module-level repositories and the service singletons at new stores."""

    from src.course_copilot.services.drafts.service import draft_service
    from src.course_copilot.services.sessions.service import session_service

    inmemory_repos.session_repository = sessions  # type: ignore[assignment]
    inmemory_repos.draft_repository = drafts  # type: ignore[assignment]
    session_service.use_repositories(sessions, drafts)
    draft_service.use_repository(drafts)


def init_sql_repositories(database_url: Optional[str] = None, *, force: bool = False) -> bool:
    """Switch the in-memory repositories to SQL-backed implementations.

    Does nothing unless USE_SQL_REPOS is enabled (or ``force`` is passed) and a
    database URL is available. Returns True when the SQL stores were bound.
    """

    if not (settings.use_sql_repos or force):
        return False

    db_url = database_url or settings.database_url
    if not db_url:
        logger.warning("USE_SQL_REPOS is set but DATABASE_URL is empty; keeping in-memory repositories")
        return False

    engine = create_db_engine(db_url)

    # Create tables if they do not exist. Production deployments should run
    # migrations instead.
    Base.metadata.create_all(engine)

    session_factory = create_sqlalchemy_session_factory(engine)
    bind_repositories(SqlSessionRepository(session_factory), SqlLessonDraftRepository(session_factory))
    logger.info("SQL repositories initialised for %s", engine.url.render_as_string(hide_password=True))
    return True
