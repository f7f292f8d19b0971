from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.course_copilot.domain.models.course_outline import CollectedData, CourseOutline
from src.course_copilot.errors import InvalidInputError, SessionStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    ABANDONED = "abandoned"


# Lifecycle transitions. Completed and abandoned sessions accept nothing else.
ALLOWED_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.ACTIVE: frozenset(
        {SessionState.PAUSED, SessionState.COMPLETED, SessionState.ERROR, SessionState.ABANDONED}
    ),
    SessionState.PAUSED: frozenset({SessionState.ACTIVE, SessionState.ERROR, SessionState.ABANDONED}),
    SessionState.ERROR: frozenset({SessionState.ABANDONED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.ABANDONED: frozenset(),
}

TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ABANDONED})

# Fields whose change counts as a content change (bumps updated_at on save).
CONTENT_FIELDS = ("messages", "title", "collected_data", "current_step")

DEFAULT_TITLE = "New Course (Draft)"
INITIAL_STEP = "initial"
READY_STEP = "ready_to_create"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationSession(BaseModel):
    """One authoring conversation: its message log and working outline state.

    ``updated_at`` is owned by the store: it reflects the last time a content
    field (messages, title, collected data, current step) was durably
    changed. ``version`` is the optimistic concurrency token checked on save.
    """

    session_id: str
    user_id: str
    state: SessionState = SessionState.ACTIVE
    context: str = "course_creation"
    title: str = DEFAULT_TITLE
    messages: List[ChatMessage] = Field(default_factory=list)
    collected_data: CollectedData = Field(default_factory=CollectedData)
    current_step: str = INITIAL_STEP
    paused_from_step: Optional[str] = None
    tokens_used: int = 0
    cost_accrued: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Last change time per content field, used for field-level sync.
    field_changed_at: Dict[str, datetime] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    autosaved_at: Optional[datetime] = None

    # Content

    def _mark_changed(self, field: str) -> None:
        self.field_changed_at[field] = utcnow()

    def add_message(
        self,
        role: MessageRole | str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        max_history: Optional[int] = None,
    ) -> ChatMessage:
        message = ChatMessage(role=MessageRole(role), content=content, metadata=metadata or {})
        self.messages.append(message)
        if max_history is not None and len(self.messages) > max_history:
            self.messages = self.messages[-max_history:]
        self._mark_changed("messages")
        return message

    def clear_messages(self) -> None:
        self.messages = []
        self._mark_changed("messages")

    def replace_messages(self, messages: List[ChatMessage]) -> None:
        self.messages = list(messages)
        self._mark_changed("messages")

    def recent_messages(self, count: int = 10) -> List[ChatMessage]:
        return self.messages[-count:] if count > 0 else []

    def set_title(self, title: str) -> None:
        if title != self.title:
            self.title = title
            self._mark_changed("title")

    def set_step(self, step: str) -> None:
        if step != self.current_step:
            self.current_step = step
            self._mark_changed("current_step")

    @property
    def outline(self) -> Optional[CourseOutline]:
        return self.collected_data.course_structure

    def set_outline(self, outline: Optional[CourseOutline]) -> None:
        self.collected_data.course_structure = outline
        self._mark_changed("collected_data")

    def set_value(self, key: str, value: Any) -> None:
        self.collected_data.values[key] = value
        self._mark_changed("collected_data")

    def replace_collected_data(self, data: CollectedData) -> None:
        self.collected_data = data
        self._mark_changed("collected_data")

    def content_fingerprint(self) -> str:
        """Stable hash of the content fields, compared by the store on save."""

        payload = self.model_dump(mode="json", include=set(CONTENT_FIELDS))
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def add_usage(self, tokens: int, cost: float) -> None:
        if tokens < 0 or cost < 0:
            raise InvalidInputError("Usage counters cannot decrease", self.session_id)
        self.tokens_used += tokens
        self.cost_accrued += cost

    # Lifecycle

    @property
    def accepts_turns(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, target: SessionState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Cannot move session from '{self.state.value}' to '{target.value}'",
                self.session_id,
            )
        self.state = target

    def pause(self, reason: str = "") -> None:
        self._transition(SessionState.PAUSED)
        self.paused_from_step = self.current_step
        self.metadata["pause_reason"] = reason
        self.metadata["paused_at"] = utcnow().isoformat()
        self.add_message(
            MessageRole.SYSTEM,
            "Conversation paused",
            {"reason": reason, "paused_from_step": self.paused_from_step},
        )

    def resume(self) -> None:
        self._transition(SessionState.ACTIVE)
        resumed_to = self.paused_from_step or self.current_step
        self.add_message(MessageRole.SYSTEM, "Conversation resumed", {"resumed_to_step": resumed_to})
        if self.paused_from_step:
            self.set_step(self.paused_from_step)
            self.paused_from_step = None
        self.metadata.pop("pause_reason", None)

    def complete(self, completion_data: Optional[Dict[str, Any]] = None) -> None:
        self._transition(SessionState.COMPLETED)
        self.completed_at = utcnow()
        self.metadata["completion_data"] = completion_data or {}
        self.add_message(MessageRole.SYSTEM, "Conversation completed", completion_data or {})

    def fail(self, reason: str) -> None:
        self._transition(SessionState.ERROR)
        self.metadata["error_reason"] = reason
        self.metadata["failed_at"] = utcnow().isoformat()

    def abandon(self, reason: str = "") -> None:
        self._transition(SessionState.ABANDONED)
        self.metadata["abandon_reason"] = reason
        self.metadata["abandoned_at"] = utcnow().isoformat()
        self.add_message(MessageRole.SYSTEM, "Conversation abandoned", {"reason": reason})

    # Checkpoints

    def create_checkpoint(self, name: str = "") -> Dict[str, Any]:
        checkpoint_name = name or f"checkpoint_{int(utcnow().timestamp())}"
        checkpoint = {
            "name": checkpoint_name,
            "timestamp": utcnow().isoformat(),
            "current_step": self.current_step,
            "collected_data": self.collected_data.model_dump(mode="json"),
            "message_count": len(self.messages),
        }
        checkpoints = dict(self.metadata.get("checkpoints") or {})
        checkpoints[checkpoint_name] = checkpoint
        self.metadata["checkpoints"] = checkpoints
        return checkpoint

    def restore_checkpoint(self, name: str) -> bool:
        checkpoint = (self.metadata.get("checkpoints") or {}).get(name)
        if checkpoint is None:
            return False
        self.set_step(checkpoint["current_step"])
        self.replace_collected_data(CollectedData.model_validate(checkpoint["collected_data"]))
        count = checkpoint.get("message_count")
        if count is not None and len(self.messages) > count:
            self.messages = self.messages[:count]
            self._mark_changed("messages")
        return True

    # Reporting

    def statistics(self) -> Dict[str, Any]:
        by_role = {role: 0 for role in MessageRole}
        for message in self.messages:
            by_role[message.role] += 1
        duration = (self.updated_at - self.created_at).total_seconds()
        assistant = by_role[MessageRole.ASSISTANT]
        return {
            "total_messages": len(self.messages),
            "user_messages": by_role[MessageRole.USER],
            "assistant_messages": assistant,
            "system_messages": by_role[MessageRole.SYSTEM],
            "duration_seconds": duration,
            "average_response_time": duration / assistant if assistant else 0.0,
            "tokens_used": self.tokens_used,
            "cost_accrued": self.cost_accrued,
            "state": self.state.value,
            "current_step": self.current_step,
            "has_outline": self.outline is not None,
        }
