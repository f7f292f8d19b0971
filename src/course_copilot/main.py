import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.course_copilot.api.v1.routes_chat import router as chat_router_v1
from src.course_copilot.api.v1.routes_courses import router as courses_router_v1
from src.course_copilot.api.v1.routes_drafts import router as drafts_router_v1
from src.course_copilot.api.v1.routes_sessions import router as sessions_router_v1
from src.course_copilot.api.v1.routes_sync import router as sync_router_v1
from src.course_copilot.api.v1.routes_system import router as system_router_v1
from src.course_copilot.config import settings
from src.course_copilot.infra.db.bootstrap import init_sql_repositories
from src.course_copilot.services.background.scheduler import BackgroundScheduler, build_default_scheduler
from src.course_copilot.services.chat.orchestrator import chat_orchestrator

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Course Copilot API")


@app.on_event("startup")
async def on_startup() -> None:
    """Application startup hook.

    When USE_SQL_REPOS is enabled and a DATABASE_URL is configured, sessions
    and drafts move to SQL-backed repositories; otherwise the in-memory ones
    stay active. Autosave and timeout jobs start when ENABLE_BACKGROUND_JOBS
    is set.
    """

    app.state.scheduler = None
    init_sql_repositories()
    if settings.enable_background_jobs:
        scheduler = build_default_scheduler()
        scheduler.start()
        app.state.scheduler = scheduler


@app.on_event("shutdown")
async def on_shutdown() -> None:
    scheduler: Optional[BackgroundScheduler] = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()
        app.state.scheduler = None
    chat_orchestrator.shutdown()


allow_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    """Basic liveness check for the API root."""
    return {"status": "ok"}


app.include_router(system_router_v1, prefix="/api/v1")
app.include_router(sessions_router_v1, prefix="/api/v1")
app.include_router(chat_router_v1, prefix="/api/v1")
app.include_router(drafts_router_v1, prefix="/api/v1")
app.include_router(sync_router_v1, prefix="/api/v1")
app.include_router(courses_router_v1, prefix="/api/v1")
