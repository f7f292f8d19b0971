from src.course_copilot.context import system_context
from src.course_copilot.infra.db import inmemory
from src.course_copilot.infra.db.bootstrap import bind_repositories, init_sql_repositories
from src.course_copilot.infra.db.sql_sessions import SqlSessionRepository
from src.course_copilot.services.drafts.service import draft_service
from src.course_copilot.services.sessions.service import session_service


def test_sql_repositories_are_opt_in():
    assert init_sql_repositories("sqlite://") is False
    assert not isinstance(session_service.repository, SqlSessionRepository)


def test_forced_sql_binding_rewires_the_services():
    original_sessions, original_drafts = inmemory.session_repository, inmemory.draft_repository
    try:
        assert init_sql_repositories("sqlite://", force=True) is True
        assert isinstance(session_service.repository, SqlSessionRepository)

        ctx = system_context("sql-user")
        session = session_service.create_session(ctx, title="Stored in SQLite")
        draft_service.save_draft(session.session_id, "0", "0", "body")

        assert session_service.load_session(session.session_id, ctx).title == "Stored in SQLite"
        assert draft_service.get_draft(session.session_id, "0", "0").content == "body"
    finally:
        bind_repositories(original_sessions, original_drafts)
