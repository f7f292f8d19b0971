from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.course_copilot.api.errors import handle_copilot_errors
from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.domain.models.conversation_session import ConversationSession, SessionState
from src.course_copilot.errors import AccessDeniedError
from src.course_copilot.security import get_api_key
from src.course_copilot.services.sessions.service import Capability, session_service

router = APIRouter(
    prefix="/sessions",
    tags=["sessions"],
    dependencies=[Depends(get_api_key)],
)


class CreateSessionRequest(BaseModel):
    context: str = "course_creation"
    title: Optional[str] = None
    initial_data: Optional[Dict[str, Any]] = None


class SessionSummary(BaseModel):
    session_id: str
    user_id: str
    title: str
    state: SessionState
    context: str
    current_step: str
    message_count: int
    has_outline: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_session(cls, session: ConversationSession) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            title=session.title,
            state=session.state,
            context=session.context,
            current_step=session.current_step,
            message_count=len(session.messages),
            has_outline=session.outline is not None,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class BatchLoadRequest(BaseModel):
    session_ids: List[str] = Field(default_factory=list, max_length=100)


class ReasonRequest(BaseModel):
    reason: str = ""


class CompleteRequest(BaseModel):
    completion_data: Dict[str, Any] = Field(default_factory=dict)


class ImportRequest(BaseModel):
    payload: Dict[str, Any]
    preserve_session_id: bool = False


class CollaborationRequest(BaseModel):
    collaborators: List[str]


class CheckpointRequest(BaseModel):
    name: str = ""


@router.post("/", response_model=ConversationSession, status_code=status.HTTP_201_CREATED)
@handle_copilot_errors
async def create_session(
    payload: CreateSessionRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.create_session(
        ctx,
        context=payload.context,
        title=payload.title,
        initial_data=payload.initial_data,
    )


@router.get("/", response_model=List[SessionSummary])
@handle_copilot_errors
async def list_sessions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    state: Optional[SessionState] = None,
    ctx: RequestContext = Depends(request_context_dependency),
) -> List[SessionSummary]:
    sessions = session_service.list_sessions_for_user(
        ctx.user_id,
        limit=limit,
        offset=offset,
        states=[state] if state is not None else None,
    )
    return [SessionSummary.from_session(s) for s in sessions]


@router.post("/batch", response_model=Dict[str, SessionSummary])
@handle_copilot_errors
async def load_sessions(
    payload: BatchLoadRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> Dict[str, SessionSummary]:
    """Load several sessions in one query. Sessions the caller cannot view are left out."""

    visible: Dict[str, SessionSummary] = {}
    for session_id, session in session_service.load_sessions(payload.session_ids).items():
        try:
            session_service.check_access(session, ctx, capability=Capability.VIEW)
        except AccessDeniedError:
            continue
        visible[session_id] = SessionSummary.from_session(session)
    return visible


@router.post("/import", response_model=ConversationSession, status_code=status.HTTP_201_CREATED)
@handle_copilot_errors
async def import_session(
    payload: ImportRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.import_session(ctx, payload.payload, preserve_session_id=payload.preserve_session_id)


@router.get("/{session_id}", response_model=ConversationSession)
@handle_copilot_errors
async def get_session(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.load_session(session_id, ctx)


@router.delete("/{session_id}")
@handle_copilot_errors
async def delete_session(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    return {"deleted": session_service.delete_session(ctx, session_id)}


@router.post("/{session_id}/pause", response_model=ConversationSession)
@handle_copilot_errors
async def pause_session(
    session_id: str,
    payload: ReasonRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.pause_session(ctx, session_id, payload.reason)


@router.post("/{session_id}/resume", response_model=ConversationSession)
@handle_copilot_errors
async def resume_session(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.resume_session(ctx, session_id)


@router.post("/{session_id}/complete", response_model=ConversationSession)
@handle_copilot_errors
async def complete_session(
    session_id: str,
    payload: CompleteRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.complete_session(ctx, session_id, payload.completion_data)


@router.post("/{session_id}/abandon", response_model=ConversationSession)
@handle_copilot_errors
async def abandon_session(
    session_id: str,
    payload: ReasonRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.abandon_session(ctx, session_id, payload.reason)


@router.post("/{session_id}/clear-messages", response_model=ConversationSession)
@handle_copilot_errors
async def clear_messages(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.clear_messages(ctx, session_id)


@router.get("/{session_id}/statistics")
@handle_copilot_errors
async def session_statistics(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    return session_service.load_session(session_id, ctx).statistics()


@router.post("/{session_id}/checkpoints", status_code=status.HTTP_201_CREATED)
@handle_copilot_errors
async def create_checkpoint(
    session_id: str,
    payload: CheckpointRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    return session_service.create_checkpoint(ctx, session_id, payload.name)


@router.post("/{session_id}/checkpoints/{name}/restore", response_model=ConversationSession)
@handle_copilot_errors
async def restore_checkpoint(
    session_id: str,
    name: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.restore_checkpoint(ctx, session_id, name)


@router.get("/{session_id}/export")
@handle_copilot_errors
async def export_session(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    return session_service.export_session(ctx, session_id)


@router.post("/{session_id}/collaboration", response_model=ConversationSession)
@handle_copilot_errors
async def enable_collaboration(
    session_id: str,
    payload: CollaborationRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.enable_collaboration(ctx, session_id, payload.collaborators)


@router.delete("/{session_id}/collaboration", response_model=ConversationSession)
@handle_copilot_errors
async def disable_collaboration(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return session_service.disable_collaboration(ctx, session_id)
