import threading

import pytest

from src.course_copilot.domain.models.conversation_session import READY_STEP, MessageRole, SessionState
from src.course_copilot.errors import InvalidInputError, SessionStateError, UpstreamError
from src.course_copilot.services.chat.orchestrator import EXTRACTION_FAILURES_KEY, ChatOrchestrator
from src.course_copilot.services.llm.backends import DemoLLMBackend, LLMResponse

MALFORMED = 'Here you go:\n```json\n{"title": "PHP", "sections": [\n```'


class ScriptedBackend:
    """Replays canned responses and records the prompts it was sent."""

    def __init__(self, *responses: LLMResponse) -> None:
        self._responses = list(responses)
        self.prompts = []

    def generate(self, prompt, purpose, options):
        self.prompts.append((purpose, prompt))
        return self._responses.pop(0)


class BlockingBackend:
    def __init__(self) -> None:
        self.release = threading.Event()

    def generate(self, prompt, purpose, options):
        self.release.wait(5)
        return LLMResponse(content="too late")


@pytest.fixture
def make_orchestrator(sessions, drafts):
    def _make(backend, timeout_seconds=5.0):
        return ChatOrchestrator(backend, sessions=sessions, drafts=drafts, timeout_seconds=timeout_seconds)

    return _make


def test_php_beginner_course_becomes_ready(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(DemoLLMBackend())
    session = sessions.create_session(ctx)

    result = orchestrator.handle_turn(session, "Create a 4-hour PHP course for beginners with a todo-app project")

    assert result.ready_to_materialize
    assert result.current_step == READY_STEP
    assert [a["action"] for a in result.suggested_actions] == ["create_course", "modify"]
    assert "```" not in result.assistant_message

    stored = sessions.load_session(session.session_id)
    outline = stored.outline
    assert outline.title == "PHP for Beginners"
    assert outline.sections
    assert any("todo-app" in section.title for section in outline.sections)
    assert stored.title == "PHP for Beginners"
    assert [m.role for m in stored.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert stored.tokens_used > 0
    assert stored.cost_accrued > 0


def test_clarifying_reply_stores_nothing(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(DemoLLMBackend())
    session = sessions.create_session(ctx)

    result = orchestrator.handle_turn(session, "I teach high school chemistry")

    assert not result.ready_to_materialize
    assert result.course_data is None
    assert result.suggested_actions == []
    assert sessions.load_session(session.session_id).outline is None


def test_history_and_collected_data_reach_the_prompt(make_orchestrator, sessions, ctx):
    backend = ScriptedBackend(LLMResponse(content="First answer"), LLMResponse(content="Second answer"))
    orchestrator = make_orchestrator(backend)
    session = sessions.create_session(ctx, initial_data={"audience": "nurses"})

    orchestrator.handle_turn(session, "hello")
    orchestrator.handle_turn(session, "and again")

    _, prompt = backend.prompts[-1]
    assert "user: hello" in prompt
    assert "assistant: First answer" in prompt
    assert "User: and again" in prompt
    assert '"audience": "nurses"' in prompt


def test_malformed_block_is_shown_verbatim(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(ScriptedBackend(LLMResponse(content=MALFORMED)))
    session = sessions.create_session(ctx)

    result = orchestrator.handle_turn(session, "Create a PHP course")

    assert result.assistant_message == MALFORMED
    assert not result.ready_to_materialize
    stored = sessions.load_session(session.session_id)
    assert stored.state == SessionState.ACTIVE
    assert stored.outline is None
    assert stored.metadata[EXTRACTION_FAILURES_KEY] == 1


def test_repeated_malformed_blocks_move_the_session_to_error(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(ScriptedBackend(*[LLMResponse(content=MALFORMED)] * 3))
    session = sessions.create_session(ctx)

    orchestrator.handle_turn(session, "one")
    orchestrator.handle_turn(session, "two")
    orchestrator.handle_turn(session, "three")

    stored = sessions.load_session(session.session_id)
    assert stored.state == SessionState.ERROR
    with pytest.raises(SessionStateError):
        orchestrator.handle_turn(stored, "four")


def test_a_good_reply_resets_the_failure_counter(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(
        ScriptedBackend(LLMResponse(content=MALFORMED), LLMResponse(content="All good"))
    )
    session = sessions.create_session(ctx)
    orchestrator.handle_turn(session, "one")
    orchestrator.handle_turn(session, "two")
    assert EXTRACTION_FAILURES_KEY not in sessions.load_session(session.session_id).metadata


def test_model_error_leaves_the_session_untouched(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(ScriptedBackend(LLMResponse(error=True, message="quota exceeded")))
    session = sessions.create_session(ctx)
    version = session.version

    with pytest.raises(UpstreamError) as excinfo:
        orchestrator.handle_turn(session, "hello")

    assert excinfo.value.message == "quota exceeded"
    assert not excinfo.value.timed_out
    stored = sessions.load_session(session.session_id)
    assert stored.messages == []
    assert stored.version == version


def test_slow_model_times_out(make_orchestrator, sessions, ctx):
    backend = BlockingBackend()
    orchestrator = make_orchestrator(backend, timeout_seconds=0.05)
    session = sessions.create_session(ctx)
    try:
        with pytest.raises(UpstreamError) as excinfo:
            orchestrator.handle_turn(session, "hello")
    finally:
        backend.release.set()
    assert excinfo.value.timed_out
    assert sessions.load_session(session.session_id).messages == []


def test_turns_are_rejected_when_not_active(make_orchestrator, sessions, ctx):
    orchestrator = make_orchestrator(DemoLLMBackend())
    session = sessions.create_session(ctx)
    with pytest.raises(InvalidInputError):
        orchestrator.handle_turn(session, "   ")

    paused = sessions.pause_session(ctx, session.session_id)
    with pytest.raises(SessionStateError):
        orchestrator.handle_turn(paused, "hello")


def test_lesson_generation_can_save_a_draft(make_orchestrator, sessions, drafts, ctx):
    orchestrator = make_orchestrator(DemoLLMBackend())
    session = sessions.create_session(ctx)

    content = orchestrator.generate_lesson_content(
        session, "Basics", "Variables and types", save_as=("0", "0")
    )

    assert content.startswith("## Variables and types")
    assert drafts.get_draft(session.session_id, "0", "0").content == content
    assert sessions.load_session(session.session_id).tokens_used > 0


def _outline_reply(title: str) -> LLMResponse:
    body = '{"title": "%s", "sections": [{"title": "Basics", "lessons": [{"title": "Syntax"}]}]}' % title
    return LLMResponse(content="Here is the outline.\n```json\n" + body + "\n```")


def test_every_accepted_outline_relabels_the_session(make_orchestrator, sessions, ctx):
    backend = ScriptedBackend(_outline_reply("PHP Basics"), _outline_reply("PHP for Busy Nurses"))
    orchestrator = make_orchestrator(backend)
    session = sessions.create_session(ctx, title="My PHP idea")

    orchestrator.handle_turn(session, "Create a PHP course")
    assert sessions.load_session(session.session_id).title == "PHP Basics"

    orchestrator.handle_turn(sessions.load_session(session.session_id), "Aim it at nurses instead")
    stored = sessions.load_session(session.session_id)
    assert stored.title == "PHP for Busy Nurses"
    assert stored.outline.title == "PHP for Busy Nurses"


def test_shutdown_abandons_a_hung_call_and_later_turns_get_a_fresh_pool(sessions, drafts, ctx):
    backend = BlockingBackend()
    orchestrator = ChatOrchestrator(backend, sessions=sessions, drafts=drafts, timeout_seconds=0.05, max_workers=1)
    session = sessions.create_session(ctx)
    try:
        with pytest.raises(UpstreamError):
            orchestrator.handle_turn(session, "hello")
        orchestrator.shutdown()
    finally:
        backend.release.set()

    orchestrator.use_backend(DemoLLMBackend())
    result = orchestrator.handle_turn(sessions.load_session(session.session_id), "hello again")
    assert result.assistant_message
    orchestrator.shutdown()
