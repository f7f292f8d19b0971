from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from src.course_copilot.api.errors import handle_copilot_errors
from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.domain.models.conversation_session import SessionState
from src.course_copilot.security import get_api_key
from src.course_copilot.services.chat.orchestrator import chat_orchestrator
from src.course_copilot.services.sessions.service import Capability, session_service

router = APIRouter(
    prefix="/chat",
    tags=["chat"],
    dependencies=[Depends(get_api_key)],
)


class ChatRequest(BaseModel):
    message: str


class ChatResponse(BaseModel):
    session_id: str
    assistant_message: str
    ready_to_materialize: bool
    suggested_actions: List[Dict[str, str]] = Field(default_factory=list)
    course_data: Optional[Dict[str, Any]] = None
    current_step: str
    state: SessionState
    tokens_used: int
    cost_accrued: float


class LessonRequest(BaseModel):
    section_title: str = ""
    lesson_title: str
    instructions: Optional[str] = None
    section_id: Optional[str] = None
    lesson_id: Optional[str] = None
    order_index: int = 0


class LessonResponse(BaseModel):
    session_id: str
    content: str
    saved_as_draft: bool


@router.post("/{session_id}/messages", response_model=ChatResponse)
@handle_copilot_errors
async def send_message(
    session_id: str,
    payload: ChatRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ChatResponse:
    """Run one conversational turn.

    Model failures come back as 502 with a ``chat_message`` the client can
    show in the conversation; the session stays active and the turn can be
    retried.
    """

    session = session_service.load_session(session_id, ctx, capability=Capability.CHAT)
    result = await run_in_threadpool(chat_orchestrator.handle_turn, session, payload.message)
    return ChatResponse(
        session_id=result.session.session_id,
        assistant_message=result.assistant_message,
        ready_to_materialize=result.ready_to_materialize,
        suggested_actions=result.suggested_actions,
        course_data=result.course_data,
        current_step=result.current_step,
        state=result.session.state,
        tokens_used=result.session.tokens_used,
        cost_accrued=result.session.cost_accrued,
    )


@router.post("/{session_id}/lessons", response_model=LessonResponse)
@handle_copilot_errors
async def generate_lesson(
    session_id: str,
    payload: LessonRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> LessonResponse:
    session = session_service.load_session(session_id, ctx, capability=Capability.EDIT_DRAFTS)
    save_as = None
    if payload.section_id is not None and payload.lesson_id is not None:
        save_as = (payload.section_id, payload.lesson_id)

    content = await run_in_threadpool(
        chat_orchestrator.generate_lesson_content,
        session,
        payload.section_title,
        payload.lesson_title,
        instructions=payload.instructions,
        save_as=save_as,
        order_index=payload.order_index,
    )
    return LessonResponse(session_id=session_id, content=content, saved_as_draft=save_as is not None)
