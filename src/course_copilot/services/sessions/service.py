from __future__ import annotations

import logging
import secrets
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from src.course_copilot.config import settings
from src.course_copilot.context import RequestContext
from src.course_copilot.domain.models.conversation_session import (
    DEFAULT_TITLE,
    ConversationSession,
    SessionState,
    utcnow,
)
from src.course_copilot.domain.models.course_outline import CollectedData
from src.course_copilot.errors import (
    AccessDeniedError,
    InvalidInputError,
    NotFoundError,
    PersistenceError,
    SessionStateError,
)
from src.course_copilot.infra.db import inmemory as inmemory_repos
from src.course_copilot.infra.db.repositories import LessonDraftRepository, SessionRepository
from src.course_copilot.services.audit.service import audit_service

logger = logging.getLogger("sessions")

EXPORT_VERSION = "1.0"
SESSION_LIMIT_REASON = "Auto-abandoned due to session limit"


class Capability(str, Enum):
    VIEW = "view"
    CHAT = "chat"
    EDIT_DRAFTS = "edit_drafts"
    SYNC = "sync"
    MATERIALIZE = "materialize"
    MANAGE = "manage"
    DELETE = "delete"


# What a collaborator may do on someone else's session. Everything else is
# reserved for the owner.
COLLABORATOR_CAPABILITIES = frozenset({Capability.VIEW, Capability.CHAT, Capability.EDIT_DRAFTS, Capability.SYNC})


def generate_session_id() -> str:
    return f"cs_{secrets.token_hex(16)}"


class SessionService:
    """Create, load, persist and manage the lifecycle of authoring sessions.

    Every mutating operation loads the session fresh, applies the change and
    saves it in one go. A concurrent writer surfaces as ``StaleSessionError``
    from the store.
    """

    def __init__(
        self,
        sessions: Optional[SessionRepository] = None,
        drafts: Optional[LessonDraftRepository] = None,
    ) -> None:
        self._sessions = sessions or inmemory_repos.session_repository
        self._drafts = drafts or inmemory_repos.draft_repository

    def use_repositories(self, sessions: SessionRepository, drafts: LessonDraftRepository) -> None:
        self._sessions = sessions
        self._drafts = drafts

    @property
    def repository(self) -> SessionRepository:
        return self._sessions

    @property
    def draft_repository(self) -> LessonDraftRepository:
        return self._drafts

    # Access control

    def check_access(self, session: ConversationSession, ctx: RequestContext, capability: Capability) -> None:
        if session.user_id == ctx.user_id:
            return
        collaboration = session.metadata.get("collaboration") or {}
        if (
            collaboration.get("enabled")
            and ctx.user_id in collaboration.get("collaborators", [])
            and capability in COLLABORATOR_CAPABILITIES
        ):
            return
        raise AccessDeniedError(
            f"User '{ctx.user_id}' may not {capability.value} this session",
            session.session_id,
        )

    # Core CRUD

    def create_session(
        self,
        ctx: RequestContext,
        *,
        context: str = "course_creation",
        title: Optional[str] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> ConversationSession:
        self._enforce_session_limit(ctx.user_id)

        session = ConversationSession(
            session_id=generate_session_id(),
            user_id=ctx.user_id,
            context=context or "course_creation",
            title=title or DEFAULT_TITLE,
            collected_data=CollectedData.from_legacy(initial_data),
        )
        session = self._sessions.create(session)
        logger.info("Created session %s for user %s", session.session_id, ctx.user_id)
        audit_service.log_event(
            action="create",
            resource_type="session",
            resource_id=session.session_id,
            user_id=ctx.user_id,
            extra={"context": session.context},
        )
        return session

    def _enforce_session_limit(self, user_id: str) -> None:
        limit = settings.max_active_sessions_per_user
        while limit > 0 and self._sessions.count_active_for_user(user_id) >= limit:
            oldest = self._sessions.oldest_active_for_user(user_id)
            if oldest is None:
                break
            oldest.abandon(SESSION_LIMIT_REASON)
            self.save_session(oldest)
            self._purge_drafts(oldest.session_id)
            logger.info("Abandoned session %s: active session limit reached for %s", oldest.session_id, user_id)

    def load_session(
        self,
        session_id: str,
        ctx: Optional[RequestContext] = None,
        *,
        capability: Capability = Capability.VIEW,
    ) -> ConversationSession:
        if not session_id or not session_id.strip():
            raise InvalidInputError("Session id is required")
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Session not found", session_id)
        if ctx is not None:
            self.check_access(session, ctx, capability)
        return session

    def load_sessions(self, session_ids: Iterable[str]) -> Dict[str, ConversationSession]:
        return self._sessions.get_many(session_ids)

    def save_session(self, session: ConversationSession) -> ConversationSession:
        if not self._sessions.save(session):
            raise PersistenceError("Session could not be saved", session.session_id)
        return session

    def list_sessions_for_user(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        states: Optional[Iterable[SessionState]] = None,
    ) -> List[ConversationSession]:
        if limit <= 0 or offset < 0:
            raise InvalidInputError("limit must be positive and offset non-negative")
        return self._sessions.list_by_user(user_id, limit=limit, offset=offset, states=states)

    def delete_session(self, ctx: RequestContext, session_id: str) -> bool:
        self.load_session(session_id, ctx, capability=Capability.DELETE)
        drafts_removed = self._drafts.delete_session(session_id)
        deleted = self._sessions.delete(session_id)
        audit_service.log_event(
            action="delete",
            resource_type="session",
            resource_id=session_id,
            user_id=ctx.user_id,
            extra={"drafts_removed": drafts_removed},
        )
        return deleted

    # Lifecycle

    def pause_session(self, ctx: RequestContext, session_id: str, reason: str = "") -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        session.pause(reason)
        return self._save_audited(session, ctx, "pause")

    def resume_session(self, ctx: RequestContext, session_id: str) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        session.resume()
        return self._save_audited(session, ctx, "resume")

    def complete_session(
        self,
        ctx: RequestContext,
        session_id: str,
        completion_data: Optional[Dict[str, Any]] = None,
    ) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MATERIALIZE)
        session.complete(completion_data)
        return self._save_audited(session, ctx, "complete")

    def abandon_session(self, ctx: RequestContext, session_id: str, reason: str = "") -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        session.abandon(reason or "Abandoned by user")
        session = self._save_audited(session, ctx, "abandon")
        self._purge_drafts(session_id)
        return session

    def extend_session(self, ctx: RequestContext, session_id: str) -> ConversationSession:
        """Reset the idle clock without changing any content."""

        session = self.load_session(session_id, ctx, capability=Capability.SYNC)
        if session.state not in (SessionState.ACTIVE, SessionState.PAUSED):
            raise InvalidInputError(f"Cannot extend a session in state '{session.state.value}'", session_id)
        if not self._sessions.touch(session_id):
            raise PersistenceError("Session could not be extended", session_id)
        return self.load_session(session_id)

    def clear_messages(self, ctx: RequestContext, session_id: str) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        session.clear_messages()
        return self._save_audited(session, ctx, "clear_messages")

    def create_checkpoint(self, ctx: RequestContext, session_id: str, name: str = "") -> Dict[str, Any]:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        checkpoint = session.create_checkpoint(name)
        self._save_audited(session, ctx, "checkpoint")
        return checkpoint

    def restore_checkpoint(self, ctx: RequestContext, session_id: str, name: str) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        if not session.accepts_turns:
            raise SessionStateError(f"Cannot restore a checkpoint while {session.state.value}", session_id)
        if not session.restore_checkpoint(name):
            raise NotFoundError(f"Checkpoint '{name}' not found", session_id)
        return self._save_audited(session, ctx, "restore_checkpoint")

    def _save_audited(self, session: ConversationSession, ctx: RequestContext, action: str) -> ConversationSession:
        self.save_session(session)
        audit_service.log_event(
            action=action,
            resource_type="session",
            resource_id=session.session_id,
            user_id=ctx.user_id,
            extra={"state": session.state.value},
        )
        return session

    def _purge_drafts(self, session_id: str) -> int:
        if not settings.purge_drafts_on_abandon:
            return 0
        return self._drafts.delete_session(session_id)

    # Export / import

    def export_session(self, ctx: RequestContext, session_id: str) -> Dict[str, Any]:
        session = self.load_session(session_id, ctx)
        drafts = self._drafts.list_for_session(session_id)
        audit_service.log_event(
            action="export",
            resource_type="session",
            resource_id=session_id,
            user_id=ctx.user_id,
            extra={"messages": len(session.messages), "drafts": len(drafts)},
        )
        return {
            "export_version": EXPORT_VERSION,
            "exported_at": utcnow().isoformat(),
            "session": session.model_dump(mode="json"),
            "drafts": [draft.model_dump(mode="json") for draft in drafts],
            "statistics": session.statistics(),
        }

    def import_session(
        self,
        ctx: RequestContext,
        payload: Dict[str, Any],
        *,
        preserve_session_id: bool = False,
    ) -> ConversationSession:
        """Recreate a session from :meth:`export_session` output for the calling user."""

        raw = payload.get("session") if isinstance(payload, dict) else None
        if not isinstance(raw, dict):
            raise InvalidInputError("Import payload must contain a 'session' object")

        source = ConversationSession.model_validate(raw)
        session_id = source.session_id if preserve_session_id else generate_session_id()
        self._enforce_session_limit(ctx.user_id)

        session = source.model_copy(
            update={
                "session_id": session_id,
                "user_id": ctx.user_id,
                "state": SessionState.ACTIVE,
                "paused_from_step": None,
                "completed_at": None,
                "autosaved_at": None,
                "version": 0,
                "metadata": {
                    **{k: v for k, v in source.metadata.items() if k not in ("collaboration", "last_sync")},
                    "imported_at": utcnow().isoformat(),
                    "imported_from": source.session_id,
                    "import_version": payload.get("export_version"),
                },
            }
        )
        session = self._sessions.create(session)

        for draft in payload.get("drafts") or []:
            self._drafts.upsert(
                session_id,
                str(draft["section_id"]),
                str(draft["lesson_id"]),
                draft.get("content", ""),
                int(draft.get("order_index", 0)),
            )

        audit_service.log_event(
            action="import",
            resource_type="session",
            resource_id=session_id,
            user_id=ctx.user_id,
            extra={"imported_from": source.session_id},
        )
        return session

    # Collaboration

    def enable_collaboration(
        self, ctx: RequestContext, session_id: str, collaborators: Iterable[str]
    ) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        people = sorted({c.strip() for c in collaborators if c and c.strip() and c.strip() != session.user_id})
        if not people:
            raise InvalidInputError("At least one collaborator is required", session_id)
        session.metadata["collaboration"] = {
            "enabled": True,
            "collaborators": people,
            "capabilities": sorted(c.value for c in COLLABORATOR_CAPABILITIES),
            "enabled_at": utcnow().isoformat(),
        }
        return self._save_audited(session, ctx, "enable_collaboration")

    def disable_collaboration(self, ctx: RequestContext, session_id: str) -> ConversationSession:
        session = self.load_session(session_id, ctx, capability=Capability.MANAGE)
        session.metadata.pop("collaboration", None)
        return self._save_audited(session, ctx, "disable_collaboration")


session_service = SessionService()
