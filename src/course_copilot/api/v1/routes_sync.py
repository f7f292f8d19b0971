from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from src.course_copilot.api.errors import handle_copilot_errors
from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.security import get_api_key
from src.course_copilot.services.background.sync import (
    ClientSnapshot,
    SyncDirection,
    SyncPolicy,
    sync_coordinator,
)
from src.course_copilot.services.background.timeout import timeout_monitor
from src.course_copilot.services.sessions.service import Capability, session_service

router = APIRouter(
    prefix="/sessions",
    tags=["sync"],
    dependencies=[Depends(get_api_key)],
)


class SyncRequest(BaseModel):
    snapshot: ClientSnapshot
    policy: Optional[SyncPolicy] = None


class SyncResponse(BaseModel):
    direction: SyncDirection
    policy: SyncPolicy
    conflict_detected: bool
    applied_fields: List[str] = Field(default_factory=list)
    conflicting_fields: List[str] = Field(default_factory=list)
    needs_update: bool
    server_state: Dict[str, Any]


@router.post("/{session_id}/sync", response_model=SyncResponse)
@handle_copilot_errors
async def synchronize(
    session_id: str,
    payload: SyncRequest,
    ctx: RequestContext = Depends(request_context_dependency),
) -> SyncResponse:
    result = await run_in_threadpool(
        sync_coordinator.synchronize, ctx, session_id, payload.snapshot, payload.policy
    )
    return SyncResponse(
        direction=result.direction,
        policy=result.policy,
        conflict_detected=result.conflict_detected,
        applied_fields=result.applied_fields,
        conflicting_fields=result.conflicting_fields,
        needs_update=result.needs_update,
        server_state=result.server_state,
    )


@router.get("/{session_id}/heartbeat")
@handle_copilot_errors
async def heartbeat(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    """Idle clock of a session; clients poll this to show timeout warnings."""

    session = await run_in_threadpool(session_service.load_session, session_id, ctx, capability=Capability.SYNC)
    return timeout_monitor.session_status(session)


@router.post("/{session_id}/extend")
@handle_copilot_errors
async def extend_session(
    session_id: str,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    session = await run_in_threadpool(session_service.extend_session, ctx, session_id)
    return timeout_monitor.session_status(session)
