from datetime import timedelta

import pytest

from src.course_copilot.domain.models.conversation_session import (
    ConversationSession,
    MessageRole,
    SessionState,
)
from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.errors import PersistenceError, StaleSessionError
from src.course_copilot.infra.db.inmemory import InMemoryLessonDraftRepository, InMemorySessionRepository
from src.course_copilot.infra.db.models import Base
from src.course_copilot.infra.db.session import create_db_engine, create_sqlalchemy_session_factory
from src.course_copilot.infra.db.sql_drafts import SqlLessonDraftRepository
from src.course_copilot.infra.db.sql_sessions import SqlSessionRepository


@pytest.fixture(params=["memory", "sql"])
def repos(request, clock):
    if request.param == "memory":
        yield InMemorySessionRepository(clock=clock), InMemoryLessonDraftRepository(clock=clock)
        return
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = create_sqlalchemy_session_factory(engine)
    yield SqlSessionRepository(factory, clock=clock), SqlLessonDraftRepository(factory, clock=clock)
    engine.dispose()


@pytest.fixture
def store(repos):
    return repos[0]


@pytest.fixture
def draft_store(repos):
    return repos[1]


def _new(session_id: str, user_id: str = "alice") -> ConversationSession:
    return ConversationSession(session_id=session_id, user_id=user_id)


def test_save_then_load_round_trips_every_field(store, clock):
    session = store.create(_new("cs_1"))
    session.add_message(MessageRole.USER, "Create a PHP course", {"client": "web"})
    session.set_outline(
        CourseOutline(
            title="PHP for Beginners",
            sections=[{"id": 10, "title": "Intro", "lessons": [{"id": "a", "title": "Hello", "duration": 15}]}],
        )
    )
    session.set_value("audience", "beginners")
    session.set_step("ready_to_create")
    session.add_usage(42, 0.1)
    session.metadata["note"] = {"nested": [1, 2]}
    clock.advance(minutes=1)
    assert store.save(session)

    loaded = store.get("cs_1")
    assert loaded.model_dump() == session.model_dump()
    assert loaded.outline.sections[0].lessons[0].duration == "15"


def test_create_rejects_duplicate_ids(store):
    store.create(_new("cs_dup"))
    with pytest.raises(PersistenceError):
        store.create(_new("cs_dup"))


def test_updated_at_moves_only_on_content_change(store, clock):
    session = store.create(_new("cs_ts"))
    created = session.updated_at

    clock.advance(minutes=5)
    session.metadata["autosave_count"] = 1
    session.autosaved_at = session.updated_at
    store.save(session)
    assert store.get("cs_ts").updated_at == created

    clock.advance(minutes=5)
    session.add_message(MessageRole.USER, "hello")
    store.save(session)
    assert store.get("cs_ts").updated_at == clock.now


def test_concurrent_writer_is_detected(store):
    store.create(_new("cs_race"))
    first = store.get("cs_race")
    second = store.get("cs_race")

    first.set_title("From tab one")
    store.save(first)

    second.set_title("From tab two")
    with pytest.raises(StaleSessionError):
        store.save(second)
    assert store.get("cs_race").title == "From tab one"


def test_idle_listing_uses_the_injected_clock(store, clock):
    store.create(_new("cs_old"))
    clock.advance(minutes=30)
    store.create(_new("cs_mid"))
    clock.advance(minutes=31)
    store.create(_new("cs_new"))

    assert store.list_active_older_than(timedelta(minutes=60)) == ["cs_old"]
    assert store.list_active_older_than(timedelta(minutes=30)) == ["cs_old", "cs_mid"]
    assert store.list_active_older_than(timedelta(minutes=30), limit=1) == ["cs_old"]

    idle = store.list_idle_between(timedelta(minutes=30), timedelta(minutes=60))
    assert [s.session_id for s in idle] == ["cs_mid"]


def test_batch_abandon_skips_terminal_sessions_and_keeps_updated_at(store, clock):
    store.create(_new("cs_a"))
    paused = store.create(_new("cs_p"))
    paused.pause()
    store.save(paused)
    done = store.create(_new("cs_done"))
    done.complete()
    store.save(done)
    before = store.get("cs_a").updated_at

    clock.advance(hours=2)
    assert store.batch_abandon(["cs_a", "cs_p", "cs_done", "cs_missing"], "Session timed out") == ["cs_a", "cs_p"]

    abandoned = store.get("cs_a")
    assert abandoned.state == SessionState.ABANDONED
    assert abandoned.metadata["abandon_reason"] == "Session timed out"
    assert abandoned.updated_at == before
    assert store.get("cs_p").state == SessionState.ABANDONED
    assert store.get("cs_done").state == SessionState.COMPLETED


def test_batch_abandon_rechecks_idleness_at_write_time(store, clock):
    store.create(_new("cs_idle"))
    store.create(_new("cs_busy"))
    clock.advance(minutes=61)
    busy = store.get("cs_busy")
    busy.add_message(MessageRole.USER, "back again")
    store.save(busy)

    abandoned = store.batch_abandon(["cs_idle", "cs_busy"], "Session timed out", idle=timedelta(minutes=60))

    assert abandoned == ["cs_idle"]
    assert store.get("cs_busy").state == SessionState.ACTIVE
    assert store.get("cs_idle").state == SessionState.ABANDONED


def test_autosave_selection(store, clock):
    clean = store.create(_new("cs_clean"))
    clean.autosaved_at = clean.updated_at
    store.save(clean)
    store.create(_new("cs_dirty"))
    clock.advance(seconds=10)
    store.create(_new("cs_fresh"))
    clock.advance(seconds=25)

    picked = store.list_needing_autosave(timedelta(seconds=30), limit=10)
    assert [s.session_id for s in picked] == ["cs_dirty"]


def test_listing_by_user_and_state(store, clock):
    for i in range(3):
        store.create(_new(f"cs_u{i}"))
        clock.advance(minutes=1)
    store.create(_new("cs_other", user_id="bob"))
    paused = store.get("cs_u0")
    paused.pause()
    store.save(paused)

    newest_first = [s.session_id for s in store.list_by_user("alice", limit=10)]
    assert newest_first == ["cs_u0", "cs_u2", "cs_u1"]
    assert [s.session_id for s in store.list_by_user("alice", limit=1, offset=1)] == ["cs_u2"]
    active = store.list_by_user("alice", limit=10, states=[SessionState.ACTIVE])
    assert {s.session_id for s in active} == {"cs_u1", "cs_u2"}
    assert store.count_active_for_user("alice") == 2
    assert store.oldest_active_for_user("alice").session_id == "cs_u1"


def test_get_many_and_delete(store):
    store.create(_new("cs_x"))
    store.create(_new("cs_y"))
    assert set(store.get_many(["cs_x", "cs_y", "cs_z"])) == {"cs_x", "cs_y"}
    assert store.delete("cs_x")
    assert not store.delete("cs_x")
    assert store.get("cs_x") is None


def test_touch_resets_the_idle_clock(store, clock):
    store.create(_new("cs_t"))
    clock.advance(minutes=55)
    assert store.touch("cs_t")
    assert store.get("cs_t").updated_at == clock.now
    assert not store.touch("cs_missing")


def test_draft_upsert_and_listing(draft_store, clock):
    first = draft_store.upsert("cs_1", "0", "1", "v1", 1)
    clock.advance(minutes=1)
    second = draft_store.upsert("cs_1", "0", "1", "v2", 1)
    draft_store.upsert("cs_1", "0", "0", "intro", 0)
    draft_store.upsert("cs_1", "1", "0", "next", 0)
    draft_store.upsert("cs_2", "0", "0", "elsewhere", 0)

    assert second.created_at == first.created_at
    assert second.updated_at > first.updated_at
    assert draft_store.get("cs_1", "0", "1").content == "v2"
    assert [d.lesson_id for d in draft_store.list_for_session("cs_1")] == ["0", "1", "0"]

    assert draft_store.update_order("cs_1", "0", "1", 5)
    assert not draft_store.update_order("cs_1", "9", "9", 0)
    assert draft_store.delete_section("cs_1", "0") == 2
    assert draft_store.delete_session("cs_1") == 1
    assert draft_store.list_for_session("cs_2")[0].content == "elsewhere"


def test_sql_write_failures_surface_as_persistence_errors(clock):
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    factory = create_sqlalchemy_session_factory(engine)
    sessions = SqlSessionRepository(factory, clock=clock)
    drafts = SqlLessonDraftRepository(factory, clock=clock)
    Base.metadata.drop_all(engine)

    try:
        with pytest.raises(PersistenceError):
            sessions.delete("cs_gone")
        with pytest.raises(PersistenceError):
            sessions.touch("cs_gone")
        with pytest.raises(PersistenceError):
            sessions.batch_abandon(["cs_gone"], "Session timed out")
        with pytest.raises(PersistenceError):
            drafts.delete("cs_gone", "0", "0")
        with pytest.raises(PersistenceError):
            drafts.delete_section("cs_gone", "0")
        with pytest.raises(PersistenceError):
            drafts.delete_session("cs_gone")
        with pytest.raises(PersistenceError):
            drafts.update_order("cs_gone", "0", "0", 3)
    finally:
        engine.dispose()
