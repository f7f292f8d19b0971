import pytest

from src.course_copilot.domain.models.conversation_session import SessionState
from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.errors import InvalidInputError, SessionStateError
from src.course_copilot.services.materialization.service import DemoCourseGenerator, MaterializationService

OUTLINE = {
    "title": "PHP for Beginners",
    "sections": [{"title": "Basics", "lessons": [{"title": "Syntax"}, {"title": "Variables"}]}],
}


class BrokenGenerator:
    def create_course(self, outline, user_id):
        raise ConnectionError("course platform unreachable")


@pytest.fixture
def ready_session(sessions, ctx):
    session = sessions.create_session(ctx)
    session.set_outline(CourseOutline.model_validate(OUTLINE))
    return sessions.save_session(session)


def test_success_completes_the_session_and_clears_drafts(sessions, drafts, ready_session, ctx):
    generator = DemoCourseGenerator()
    service = MaterializationService(generator, sessions=sessions, drafts=drafts)
    drafts.save_draft(ready_session.session_id, "0", "1", "Variables body")

    result = service.materialize(ctx, ready_session.session_id)

    assert result.success
    assert result.preview_url == f"/courses/{result.course_id}"
    stored_outline = generator.courses[result.course_id]["outline"]
    assert stored_outline["sections"][0]["lessons"][1]["content"] == "Variables body"

    session = sessions.load_session(ready_session.session_id)
    assert session.state == SessionState.COMPLETED
    assert session.title == "Course: PHP for Beginners"
    assert session.metadata["completion_data"]["course_id"] == result.course_id
    assert drafts.get_session_drafts(ready_session.session_id) == []


def test_generator_failure_keeps_the_session_active(sessions, drafts, ready_session, ctx):
    service = MaterializationService(BrokenGenerator(), sessions=sessions, drafts=drafts)
    drafts.save_draft(ready_session.session_id, "0", "0", "Syntax body")

    result = service.materialize(ctx, ready_session.session_id)

    assert not result.success
    assert "unreachable" in result.error
    assert sessions.load_session(ready_session.session_id).state == SessionState.ACTIVE
    assert len(drafts.get_session_drafts(ready_session.session_id)) == 1


def test_an_explicit_outline_overrides_the_stored_one(sessions, drafts, ctx):
    service = MaterializationService(DemoCourseGenerator(), sessions=sessions, drafts=drafts)
    session = sessions.create_session(ctx)

    result = service.materialize(ctx, session.session_id, OUTLINE)

    assert result.success
    assert sessions.load_session(session.session_id).outline.title == "PHP for Beginners"


def test_outline_must_be_ready(sessions, drafts, ctx):
    service = MaterializationService(DemoCourseGenerator(), sessions=sessions, drafts=drafts)
    session = sessions.create_session(ctx)
    with pytest.raises(InvalidInputError):
        service.materialize(ctx, session.session_id, {"title": "No lessons", "sections": []})


def test_only_active_sessions_materialize(sessions, drafts, ready_session, ctx):
    service = MaterializationService(DemoCourseGenerator(), sessions=sessions, drafts=drafts)
    sessions.pause_session(ctx, ready_session.session_id)
    with pytest.raises(SessionStateError):
        service.materialize(ctx, ready_session.session_id)
