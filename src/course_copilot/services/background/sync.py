from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from src.course_copilot.config import settings
from src.course_copilot.context import RequestContext
from src.course_copilot.domain.models.conversation_session import ChatMessage, ConversationSession, utcnow
from src.course_copilot.domain.models.course_outline import CollectedData
from src.course_copilot.errors import InvalidInputError
from src.course_copilot.services.audit.service import audit_service
from src.course_copilot.services.sessions.service import Capability, SessionService, session_service

logger = logging.getLogger("sync")

SYNC_FIELDS = ("title", "current_step", "collected_data", "messages")


class SyncPolicy(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MERGE = "merge"


class SyncDirection(str, Enum):
    SERVER_TO_CLIENT = "server_to_client"
    CLIENT_TO_SERVER = "client_to_server"
    CONFLICT = "conflict"
    IN_SYNC = "in_sync"


class ClientSnapshot(BaseModel):
    """A client's copy of the session.

    ``base_updated_at`` is the server ``updated_at`` the client last received.
    ``field_modified_at`` holds the client's own edit time per field and
    ``last_modified`` its latest edit overall. Fields left as None are not
    part of the snapshot.
    """

    client_id: str = "unknown"
    base_updated_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    field_modified_at: Dict[str, datetime] = Field(default_factory=dict)
    title: Optional[str] = None
    current_step: Optional[str] = None
    collected_data: Optional[Dict[str, Any]] = None
    messages: Optional[List[ChatMessage]] = None


@dataclass
class SyncResult:
    direction: SyncDirection
    policy: SyncPolicy
    applied_fields: List[str] = field(default_factory=list)
    conflicting_fields: List[str] = field(default_factory=list)
    needs_update: bool = False
    server_state: Dict[str, Any] = field(default_factory=dict)

    @property
    def conflict_detected(self) -> bool:
        return self.direction == SyncDirection.CONFLICT


def _message_keys(messages: List[ChatMessage]) -> List[tuple]:
    return [(m.role.value, m.content) for m in messages]


def merge_dicts(server: Dict[str, Any], client: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive union; on a leaf present on both sides the server value stays."""

    merged = copy.deepcopy(server)
    for key, value in client.items():
        if key not in merged:
            merged[key] = copy.deepcopy(value)
        elif isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_dicts(merged[key], value)
    return merged


def merge_messages(server: List[ChatMessage], client: List[ChatMessage]) -> List[ChatMessage]:
    """Server log plus client messages newer than the server's last message."""

    last = server[-1].timestamp if server else None
    known = set(_message_keys(server))
    extra = [
        m
        for m in client
        if (last is None or m.timestamp > last) and (m.role.value, m.content) not in known
    ]
    return list(server) + sorted(extra, key=lambda m: m.timestamp)


def append_client_messages(server: List[ChatMessage], client: List[ChatMessage]) -> List[ChatMessage]:
    """Extend the server log with the client's new messages. Server messages are never dropped."""

    if _message_keys(client[: len(server)]) == _message_keys(server):
        return list(server) + list(client[len(server):])
    return merge_messages(server, client)


class SyncCoordinator:
    """Field-level reconciliation of a client snapshot with the stored session.

    A field counts as changed on the server when its last change time is later
    than the snapshot's ``base_updated_at``. It counts as changed on the client
    when the snapshot value differs and the client edited it after that base;
    a client that sends no edit times is assumed to hold stale copies of fields
    the server changed since. Messages only ever grow. Fields changed on both
    sides are conflicts resolved by the policy; the outcome is recorded in
    ``metadata["last_sync"]``.
    """

    def __init__(self, sessions: Optional[SessionService] = None) -> None:
        self._sessions = sessions or session_service

    def synchronize(
        self,
        ctx: RequestContext,
        session_id: str,
        snapshot: ClientSnapshot,
        policy: Optional[SyncPolicy | str] = None,
    ) -> SyncResult:
        policy = SyncPolicy(policy or settings.sync_conflict_policy)
        session = self._sessions.load_session(session_id, ctx, capability=Capability.SYNC)

        client_values = self._client_values(snapshot, session_id)
        server_changed = self._server_changed(session, snapshot)
        client_changed = {
            name
            for name, value in client_values.items()
            if self._differs(session, name, value) and self._client_edited(snapshot, name, server_changed)
        }

        if session.is_terminal:
            # Finished sessions are read-only; the client just catches up.
            client_changed = set()

        conflicts = client_changed & server_changed
        to_apply = client_changed - server_changed
        applied: List[str] = []

        for name in sorted(to_apply):
            if self._apply(session, name, client_values[name]):
                applied.append(name)
        for name in sorted(conflicts):
            if self._resolve(session, name, client_values[name], policy):
                applied.append(name)

        behind = any(not self._matches(session, name, value) for name, value in client_values.items())
        if conflicts:
            direction = SyncDirection.CONFLICT
        elif client_changed:
            direction = SyncDirection.CLIENT_TO_SERVER
        elif (
            server_changed
            or behind
            or (snapshot.base_updated_at is not None and session.updated_at > snapshot.base_updated_at)
        ):
            direction = SyncDirection.SERVER_TO_CLIENT
        else:
            direction = SyncDirection.IN_SYNC

        session.metadata["last_sync"] = {
            "timestamp": utcnow().isoformat(),
            "client_id": snapshot.client_id,
            "sync_direction": direction.value,
            "policy": policy.value,
            "applied_fields": sorted(applied),
            "conflicting_fields": sorted(conflicts),
            "conflict_resolved": bool(conflicts),
        }
        self._sessions.save_session(session)

        if conflicts:
            logger.info(
                "Sync conflict on %s for %s resolved with %s",
                sorted(conflicts),
                session_id,
                policy.value,
            )
        audit_service.log_event(
            action="sync",
            resource_type="session",
            resource_id=session_id,
            user_id=ctx.user_id,
            extra={"direction": direction.value, "conflicts": len(conflicts), "applied": len(applied)},
        )

        server_state = self.server_state(session)
        needs_update = direction == SyncDirection.SERVER_TO_CLIENT or any(
            not self._matches(session, name, value) for name, value in client_values.items()
        )
        return SyncResult(
            direction=direction,
            policy=policy,
            applied_fields=sorted(applied),
            conflicting_fields=sorted(conflicts),
            needs_update=needs_update,
            server_state=server_state,
        )

    @staticmethod
    def server_state(session: ConversationSession) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "state": session.state.value,
            "title": session.title,
            "current_step": session.current_step,
            "collected_data": session.collected_data.snapshot(),
            "messages": [m.model_dump(mode="json") for m in session.messages],
            "updated_at": session.updated_at.isoformat(),
            "version": session.version,
        }

    @staticmethod
    def _client_values(snapshot: ClientSnapshot, session_id: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if snapshot.title is not None:
            values["title"] = snapshot.title
        if snapshot.current_step is not None:
            values["current_step"] = snapshot.current_step
        if snapshot.collected_data is not None:
            try:
                values["collected_data"] = CollectedData.from_legacy(snapshot.collected_data).snapshot()
            except ValidationError as exc:
                raise InvalidInputError("Client collected_data is not valid course data", session_id) from exc
        if snapshot.messages is not None:
            values["messages"] = snapshot.messages
        return values

    @staticmethod
    def _server_value(session: ConversationSession, name: str) -> Any:
        if name == "collected_data":
            return session.collected_data.snapshot()
        return getattr(session, name)

    @classmethod
    def _differs(cls, session: ConversationSession, name: str, client_value: Any) -> bool:
        server_value = cls._server_value(session, name)
        if name == "messages":
            # Only new client messages count; a shorter client log is just behind.
            return len(append_client_messages(server_value, client_value)) > len(server_value)
        return client_value != server_value

    @classmethod
    def _matches(cls, session: ConversationSession, name: str, client_value: Any) -> bool:
        server_value = cls._server_value(session, name)
        if name == "messages":
            return _message_keys(client_value) == _message_keys(server_value)
        return client_value == server_value

    @staticmethod
    def _client_edited(snapshot: ClientSnapshot, name: str, server_changed: Set[str]) -> bool:
        base = snapshot.base_updated_at
        edited_at = snapshot.field_modified_at.get(name) or snapshot.last_modified
        if edited_at is not None:
            return base is None or edited_at > base
        return name not in server_changed

    @staticmethod
    def _server_changed(session: ConversationSession, snapshot: ClientSnapshot) -> Set[str]:
        base = snapshot.base_updated_at or snapshot.last_modified
        if base is None:
            # No reference point: anything the server ever changed may conflict.
            return set(session.field_changed_at) & set(SYNC_FIELDS)
        return {
            name
            for name in SYNC_FIELDS
            if name in session.field_changed_at and session.field_changed_at[name] > base
        }

    @staticmethod
    def _apply(session: ConversationSession, name: str, value: Any) -> bool:
        if name == "title":
            session.set_title(value)
        elif name == "current_step":
            session.set_step(value)
        elif name == "collected_data":
            session.replace_collected_data(CollectedData.from_legacy(value))
        elif name == "messages":
            combined = append_client_messages(session.messages, value)
            if len(combined) == len(session.messages):
                return False
            session.replace_messages(combined)
        return True

    def _resolve(
        self,
        session: ConversationSession,
        name: str,
        client_value: Any,
        policy: SyncPolicy,
    ) -> bool:
        """Apply the policy to one conflicting field. Returns True if the session changed."""

        if policy == SyncPolicy.SERVER_WINS:
            return False
        if policy == SyncPolicy.CLIENT_WINS:
            return self._apply(session, name, client_value)

        if name == "collected_data":
            merged = merge_dicts(session.collected_data.snapshot(), client_value)
            if merged == session.collected_data.snapshot():
                return False
            self._apply(session, name, merged)
            return True
        if name == "messages":
            merged_messages = merge_messages(session.messages, client_value)
            if len(merged_messages) == len(session.messages):
                return False
            session.replace_messages(merged_messages)
            return True
        # Scalars keep the server value under merge.
        return False


sync_coordinator = SyncCoordinator()
