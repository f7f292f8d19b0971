from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from src.course_copilot.config import settings
from src.course_copilot.domain.models.conversation_session import (
    READY_STEP,
    ConversationSession,
    MessageRole,
)
from src.course_copilot.errors import InvalidInputError, SessionStateError, UpstreamError
from src.course_copilot.services.audit.service import audit_service
from src.course_copilot.services.chat.extractor import extract_response, is_ready
from src.course_copilot.services.chat.prompts import build_chat_prompt, build_lesson_prompt
from src.course_copilot.services.drafts.service import DraftService, draft_service
from src.course_copilot.services.llm.backends import (
    PURPOSE_CHAT,
    PURPOSE_LESSON,
    LLMBackend,
    LLMOptions,
    LLMResponse,
    get_llm_backend_from_env,
)
from src.course_copilot.services.sessions.service import SessionService, session_service

logger = logging.getLogger("chat")

EXTRACTION_FAILURES_KEY = "extraction_failures"

READY_ACTIONS: List[Dict[str, str]] = [
    {"action": "create_course", "label": "Create Course", "type": "primary"},
    {"action": "modify", "label": "Modify Details", "type": "secondary"},
]


@dataclass
class TurnResult:
    assistant_message: str
    session: ConversationSession
    ready_to_materialize: bool = False
    suggested_actions: List[Dict[str, str]] = field(default_factory=list)
    course_data: Optional[Dict[str, Any]] = None
    current_step: str = ""


class ChatOrchestrator:
    """Runs one conversational turn: prompt, model call, extraction, persistence.

    The session passed in is mutated only after the model call succeeds, so an
    upstream failure leaves it exactly as loaded.

    Model calls run on a bounded worker pool so they can be given a deadline.
    A call that misses the deadline cannot be interrupted: it keeps its worker
    until the backend returns, which the OpenAI client bounds with its own
    request timeout. Call :meth:`shutdown` when the app stops.
    """

    def __init__(
        self,
        backend: Optional[LLMBackend] = None,
        *,
        sessions: Optional[SessionService] = None,
        drafts: Optional[DraftService] = None,
        timeout_seconds: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self._backend = backend or get_llm_backend_from_env()
        self._sessions = sessions or session_service
        self._drafts = drafts or draft_service
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.llm_timeout_seconds
        self._max_workers = max(1, max_workers or settings.llm_max_concurrent_calls)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def use_backend(self, backend: LLMBackend) -> None:
        self._backend = backend

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="llm-call")
            return self._executor

    def shutdown(self) -> None:
        """Stop the worker pool without waiting for calls still in flight."""

        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def _call_model(self, prompt: str, purpose: str, options: LLMOptions, session_id: str) -> LLMResponse:
        future = self._pool().submit(self._backend.generate, prompt, purpose, options)
        try:
            response = future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning("Model call for session %s timed out after %ss", session_id, self._timeout)
            raise UpstreamError(
                f"The AI service did not respond within {self._timeout:g} seconds",
                session_id,
                timed_out=True,
            ) from exc
        except Exception as exc:
            logger.exception("Model call for session %s failed", session_id)
            raise UpstreamError(str(exc) or "The AI service request failed", session_id) from exc

        if response.error:
            logger.warning("Model returned an error for session %s: %s", session_id, response.message)
            raise UpstreamError(response.message or "The AI service request failed", session_id)
        return response

    def _accrue_usage(self, session: ConversationSession, response: LLMResponse) -> int:
        tokens = response.total_tokens
        session.add_usage(tokens, tokens / 1000.0 * settings.llm_cost_per_1k_tokens)
        return tokens

    def handle_turn(self, session: ConversationSession, message: str) -> TurnResult:
        if not message or not message.strip():
            raise InvalidInputError("Message is required", session.session_id)
        if not session.accepts_turns:
            raise SessionStateError(
                f"Session is {session.state.value} and cannot accept new messages",
                session.session_id,
            )

        prompt = build_chat_prompt(
            session.context,
            session.messages,
            message,
            session.collected_data.snapshot(),
        )
        options = LLMOptions(temperature=settings.chat_temperature, max_tokens=settings.chat_max_tokens)
        response = self._call_model(prompt, PURPOSE_CHAT, options, session.session_id)

        extraction = extract_response(response)
        outline = extraction.outline
        ready = is_ready(outline)

        session.add_message(MessageRole.USER, message, max_history=settings.max_message_history)
        session.add_message(
            MessageRole.ASSISTANT,
            extraction.message,
            {"has_course_data": extraction.data is not None},
            max_history=settings.max_message_history,
        )
        tokens = self._accrue_usage(session, response)

        if extraction.malformed:
            failures = int(session.metadata.get(EXTRACTION_FAILURES_KEY, 0)) + 1
            session.metadata[EXTRACTION_FAILURES_KEY] = failures
            if failures >= settings.max_extraction_failures:
                session.fail(f"Persistent extraction failure: {failures} consecutive malformed course data blocks")
                logger.error("Session %s moved to error after %d malformed blocks", session.session_id, failures)
        else:
            session.metadata.pop(EXTRACTION_FAILURES_KEY, None)

        if ready:
            session.set_outline(outline)
            session.set_step(READY_STEP)
            if outline.title:
                # Every accepted outline relabels the session, revisions included.
                session.set_title(outline.title)

        self._sessions.save_session(session)
        audit_service.log_event(
            action="chat_turn",
            resource_type="session",
            resource_id=session.session_id,
            user_id=session.user_id,
            extra={"tokens": tokens, "ready": ready, "malformed_block": extraction.malformed},
        )

        return TurnResult(
            assistant_message=extraction.message,
            session=session,
            ready_to_materialize=ready,
            suggested_actions=[dict(a) for a in READY_ACTIONS] if ready else [],
            course_data=extraction.data,
            current_step=session.current_step,
        )

    def generate_lesson_content(
        self,
        session: ConversationSession,
        section_title: str,
        lesson_title: str,
        *,
        instructions: Optional[str] = None,
        save_as: Optional[Tuple[str, str]] = None,
        order_index: int = 0,
    ) -> str:
        """Ask the model for one lesson body and optionally store it as a draft."""

        if not lesson_title or not lesson_title.strip():
            raise InvalidInputError("Lesson title is required", session.session_id)
        if not session.accepts_turns:
            raise SessionStateError(
                f"Session is {session.state.value} and cannot generate content",
                session.session_id,
            )

        outline = session.outline
        prompt = build_lesson_prompt(
            outline.title if outline else session.title,
            section_title,
            lesson_title,
            course_description=outline.description if outline else None,
            instructions=instructions,
        )
        options = LLMOptions(temperature=settings.chat_temperature, max_tokens=settings.lesson_max_tokens)
        response = self._call_model(prompt, PURPOSE_LESSON, options, session.session_id)
        content = response.content.strip()

        self._accrue_usage(session, response)
        self._sessions.save_session(session)

        if save_as is not None:
            section_id, lesson_id = save_as
            self._drafts.save_draft(session.session_id, section_id, lesson_id, content, order_index)
        return content


chat_orchestrator = ChatOrchestrator()
