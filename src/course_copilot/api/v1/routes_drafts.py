from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.course_copilot.api.errors import handle_copilot_errors
from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.domain.models.conversation_session import ConversationSession
from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.domain.models.lesson_draft import LessonDraft
from src.course_copilot.errors import NotFoundError
from src.course_copilot.security import get_api_key
from src.course_copilot.services.audit.service import audit_service
from src.course_copilot.services.drafts.service import draft_service
from src.course_copilot.services.sessions.service import Capability, session_service

router = APIRouter(
    prefix="/sessions/{session_id}/drafts",
    tags=["drafts"],
    dependencies=[Depends(get_api_key)],
)


class SaveDraftRequest(BaseModel):
    content: str
    order_index: int = 0


class OrderRequest(BaseModel):
    lesson_ids: List[str]


class MapRequest(BaseModel):
    # Defaults to the session's stored outline when omitted.
    outline: Optional[CourseOutline] = None


class MapResponse(BaseModel):
    outline: CourseOutline
    report: Dict[str, Any]


class SectionOrderRequest(BaseModel):
    order: List[int] = Field(default_factory=list)


def _authorize(session_id: str, ctx: RequestContext, capability: Capability = Capability.EDIT_DRAFTS) -> None:
    session_service.load_session(session_id, ctx, capability=capability)


@router.get("/", response_model=List[LessonDraft])
@handle_copilot_errors
async def list_drafts(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> List[LessonDraft]:
    _authorize(session_id, ctx, Capability.VIEW)
    return draft_service.get_session_drafts(session_id)


@router.delete("/")
@handle_copilot_errors
async def delete_session_drafts(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    _authorize(session_id, ctx)
    return {"deleted": draft_service.delete_session_drafts(session_id)}


@router.post("/map", response_model=MapResponse)
@handle_copilot_errors
async def map_drafts(
    session_id: str,
    payload: MapRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> MapResponse:
    """Preview the outline with draft content merged in. Nothing is stored."""

    session = session_service.load_session(session_id, ctx, capability=Capability.VIEW)
    outline = payload.outline or session.outline
    if outline is None:
        raise NotFoundError("Session has no course outline", session_id)
    mapped, report = draft_service.map_drafts_to_structure(session_id, outline)
    return MapResponse(outline=mapped, report=report.as_dict())


@router.put("/sections/{section_id}/order")
@handle_copilot_errors
async def update_order(
    session_id: str,
    section_id: str,
    payload: OrderRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    _authorize(session_id, ctx)
    return {"updated": draft_service.update_order(session_id, section_id, payload.lesson_ids)}


@router.delete("/sections/{section_id}")
@handle_copilot_errors
async def delete_section_drafts(
    session_id: str,
    section_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    _authorize(session_id, ctx)
    return {"deleted": draft_service.delete_section_drafts(session_id, section_id)}


@router.put("/sections/{section_id}/lessons/{lesson_id}", response_model=LessonDraft)
@handle_copilot_errors
async def save_draft(
    session_id: str,
    section_id: str,
    lesson_id: str,
    payload: SaveDraftRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> LessonDraft:
    _authorize(session_id, ctx)
    draft = draft_service.save_draft(session_id, section_id, lesson_id, payload.content, payload.order_index)
    audit_service.log_event(
        action="save_draft",
        resource_type="draft",
        resource_id=f"{session_id}/{section_id}/{lesson_id}",
        user_id=ctx.user_id,
        extra={"length": len(payload.content)},
    )
    return draft


@router.get("/sections/{section_id}/lessons/{lesson_id}", response_model=LessonDraft)
@handle_copilot_errors
async def get_draft(
    session_id: str,
    section_id: str,
    lesson_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> LessonDraft:
    _authorize(session_id, ctx, Capability.VIEW)
    draft = draft_service.get_draft(session_id, section_id, lesson_id)
    if draft is None:
        raise NotFoundError("Draft not found", session_id)
    return draft


@router.delete("/sections/{section_id}/lessons/{lesson_id}")
@handle_copilot_errors
async def delete_draft(
    session_id: str,
    section_id: str,
    lesson_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    _authorize(session_id, ctx)
    return {"deleted": draft_service.delete_draft(session_id, section_id, lesson_id)}


# Outline node edits. Positions are zero-based indices into the stored outline.


@router.delete("/outline/sections/{section_index}", response_model=ConversationSession)
@handle_copilot_errors
async def remove_section(
    session_id: str,
    section_index: int,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return draft_service.remove_section(ctx, session_id, section_index)


@router.delete(
    "/outline/sections/{section_index}/lessons/{lesson_index}",
    response_model=ConversationSession,
)
@handle_copilot_errors
async def remove_lesson(
    session_id: str,
    section_index: int,
    lesson_index: int,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return draft_service.remove_lesson(ctx, session_id, section_index, lesson_index)


@router.put("/outline/sections/order", response_model=ConversationSession)
@handle_copilot_errors
async def reorder_sections(
    session_id: str,
    payload: SectionOrderRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> ConversationSession:
    return draft_service.reorder_sections(ctx, session_id, payload.order)
