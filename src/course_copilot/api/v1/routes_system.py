from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from starlette.concurrency import run_in_threadpool

from src.course_copilot.context import RequestContext, request_context_dependency
from src.course_copilot.security import get_api_key
from src.course_copilot.services.audit.service import audit_service
from src.course_copilot.services.background.autosave import autosave_scheduler
from src.course_copilot.services.background.timeout import timeout_monitor
from src.course_copilot.services.notifications.service import notification_channel

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/background")
async def background_status(request: Request) -> dict:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"status": "disabled", "tasks": []}
    return {"status": "enabled", "tasks": scheduler.status()}


@router.post("/system/autosave", dependencies=[Depends(get_api_key)])
async def run_autosave() -> dict:
    """Run one autosave pass now and report what it did."""

    summary = await run_in_threadpool(autosave_scheduler.run_once)
    return asdict(summary)


@router.post(
    "/system/timeouts",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(get_api_key)],
)
async def run_timeouts(
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(request_context_dependency),
) -> dict:
    """Queue a timeout sweep; it runs after the response is sent."""

    background_tasks.add_task(timeout_monitor.run_once)
    audit_service.log_event(
        action="enqueue_timeout_sweep",
        resource_type="system",
        resource_id="timeouts",
        user_id=ctx.user_id,
    )
    return {"status": "queued"}


@router.get("/notifications", dependencies=[Depends(get_api_key)])
async def drain_notifications(ctx: RequestContext = Depends(request_context_dependency)) -> list:
    """Return and clear the caller's pending notices."""

    return [
        {
            "session_id": n.session_id,
            "kind": n.kind,
            "payload": n.payload,
            "created_at": n.created_at.isoformat(),
        }
        for n in notification_channel.drain(ctx.user_id)
    ]
