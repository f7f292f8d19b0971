from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ConversationSessionORM(Base):
    __tablename__ = "conversation_sessions"
    __table_args__ = (
        UniqueConstraint("session_id", name="uq_conversation_sessions_session_id"),
        Index("ix_conversation_sessions_user_updated", "user_id", "updated_at"),
        Index("ix_conversation_sessions_state_updated", "state", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    context: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    messages: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    collected_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    current_step: Mapped[str] = mapped_column(String(64), nullable=False)
    paused_from_step: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_accrued: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # "metadata" is reserved on declarative classes.
    session_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    field_changed_at: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    autosaved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @staticmethod
    def values_from_domain(session: "ConversationSession") -> Dict[str, Any]:  # type: ignore[name-defined]
        """Column values for a session, excluding the store-owned columns."""

        payload = session.model_dump(
            mode="json",
            include={"messages", "collected_data", "metadata", "field_changed_at"},
        )
        return {
            "user_id": session.user_id,
            "state": session.state.value,
            "context": session.context,
            "title": session.title,
            "messages": payload["messages"],
            "collected_data": payload["collected_data"],
            "current_step": session.current_step,
            "paused_from_step": session.paused_from_step,
            "tokens_used": session.tokens_used,
            "cost_accrued": session.cost_accrued,
            "session_metadata": payload["metadata"],
            "field_changed_at": payload["field_changed_at"],
            "completed_at": session.completed_at,
            "autosaved_at": session.autosaved_at,
        }

    @classmethod
    def from_domain(cls, session: "ConversationSession") -> "ConversationSessionORM":  # type: ignore[name-defined]
        return cls(
            session_id=session.session_id,
            content_hash=session.content_fingerprint(),
            version=session.version,
            created_at=session.created_at,
            updated_at=session.updated_at,
            **cls.values_from_domain(session),
        )

    def to_domain(self) -> "ConversationSession":  # type: ignore[name-defined]
        from src.course_copilot.domain.models.conversation_session import ConversationSession
        from src.course_copilot.domain.models.course_outline import CollectedData

        return ConversationSession.model_validate(
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "state": self.state,
                "context": self.context,
                "title": self.title,
                "messages": self.messages or [],
                "collected_data": CollectedData.from_legacy(self.collected_data),
                "current_step": self.current_step,
                "paused_from_step": self.paused_from_step,
                "tokens_used": self.tokens_used,
                "cost_accrued": self.cost_accrued,
                "metadata": dict(self.session_metadata or {}),
                "field_changed_at": dict(self.field_changed_at or {}),
                "version": self.version,
                "created_at": as_utc(self.created_at),
                "updated_at": as_utc(self.updated_at),
                "completed_at": as_utc(self.completed_at),
                "autosaved_at": as_utc(self.autosaved_at),
            }
        )


class LessonDraftORM(Base):
    __tablename__ = "lesson_drafts"
    __table_args__ = (
        UniqueConstraint("session_id", "section_id", "lesson_id", name="uq_lesson_drafts_identity"),
        Index("ix_lesson_drafts_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    section_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_domain(self) -> "LessonDraft":  # type: ignore[name-defined]
        from src.course_copilot.domain.models.lesson_draft import LessonDraft

        return LessonDraft(
            session_id=self.session_id,
            section_id=self.section_id,
            lesson_id=self.lesson_id,
            content=self.content,
            order_index=self.order_index,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )
