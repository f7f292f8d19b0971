from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from src.course_copilot.api.errors import handle_copilot_errors
from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.security import get_api_key
from src.course_copilot.services.materialization.service import materialization_service

router = APIRouter(
    prefix="/courses",
    tags=["courses"],
    dependencies=[Depends(get_api_key)],
)


class MaterializeRequest(BaseModel):
    session_id: str
    outline: Optional[CourseOutline] = None


class MaterializeResponse(BaseModel):
    success: bool
    course_id: Optional[Union[int, str]] = None
    edit_url: Optional[str] = None
    preview_url: Optional[str] = None
    error: Optional[str] = None
    mapping: Dict[str, Any] = Field(default_factory=dict)


@router.post("/", response_model=MaterializeResponse)
@handle_copilot_errors
async def create_course(
    payload: MaterializeRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> MaterializeResponse:
    """Create a course from a session whose outline is ready.

    A generator failure is reported in the body with ``success=False``; the
    session stays active so the user can try again.
    """

    result = await run_in_threadpool(materialization_service.materialize, ctx, payload.session_id, payload.outline)
    return MaterializeResponse(
        success=result.success,
        course_id=result.course_id,
        edit_url=result.edit_url,
        preview_url=result.preview_url,
        error=result.error,
        mapping=result.mapping,
    )
