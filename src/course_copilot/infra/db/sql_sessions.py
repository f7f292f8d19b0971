from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.course_copilot.domain.models.conversation_session import ConversationSession, SessionState, utcnow
from src.course_copilot.errors import PersistenceError, StaleSessionError
from src.course_copilot.infra.db.inmemory import Clock
from src.course_copilot.infra.db.models import ConversationSessionORM, as_utc
from src.course_copilot.infra.db.repositories import SWEEPABLE_STATES, SessionRepository
from src.course_copilot.infra.db.session import SessionFactory

logger = logging.getLogger("sessions")

_SWEEPABLE = [state.value for state in SWEEPABLE_STATES]


class SqlSessionRepository(SessionRepository):
    """SQLAlchemy-backed session store.

    Saves are guarded by a conditional UPDATE on ``version`` so two requests
    racing on the same session cannot both win.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create(self, session: ConversationSession) -> ConversationSession:
        now = self._clock()
        session.created_at = now
        session.updated_at = now
        session.version = 1
        db = self._session_factory()
        try:
            db.add(ConversationSessionORM.from_domain(session))
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise PersistenceError("Session id already exists", session.session_id) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to create session", session.session_id) from exc
        finally:
            db.close()
        return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        db = self._session_factory()
        try:
            orm = (
                db.query(ConversationSessionORM)
                .filter(ConversationSessionORM.session_id == session_id)
                .one_or_none()
            )
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def get_many(self, session_ids: Iterable[str]) -> Dict[str, ConversationSession]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return {}
        db = self._session_factory()
        try:
            rows = db.query(ConversationSessionORM).filter(ConversationSessionORM.session_id.in_(ids)).all()
            return {orm.session_id: orm.to_domain() for orm in rows}
        finally:
            db.close()

    def save(self, session: ConversationSession) -> bool:
        db = self._session_factory()
        try:
            stored = (
                db.query(
                    ConversationSessionORM.version,
                    ConversationSessionORM.content_hash,
                    ConversationSessionORM.updated_at,
                    ConversationSessionORM.created_at,
                )
                .filter(ConversationSessionORM.session_id == session.session_id)
                .one_or_none()
            )
            if stored is None:
                db.close()
                self.create(session)
                return True

            stored_version, stored_hash, stored_updated_at, stored_created_at = stored
            if stored_version != session.version:
                raise StaleSessionError(
                    "Session was modified by another request",
                    session.session_id,
                    expected_version=session.version,
                    actual_version=stored_version,
                )

            fingerprint = session.content_fingerprint()
            updated_at = self._clock() if fingerprint != stored_hash else stored_updated_at
            values = ConversationSessionORM.values_from_domain(session)
            values.update(content_hash=fingerprint, updated_at=updated_at, version=stored_version + 1)

            result = db.execute(
                update(ConversationSessionORM)
                .where(
                    ConversationSessionORM.session_id == session.session_id,
                    ConversationSessionORM.version == stored_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise StaleSessionError(
                    "Session was modified by another request",
                    session.session_id,
                    expected_version=session.version,
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to save session %s", session.session_id)
            return False
        finally:
            db.close()

        session.updated_at = as_utc(updated_at)
        session.created_at = as_utc(stored_created_at)
        session.version = stored_version + 1
        return True

    def list_by_user(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        states: Optional[Iterable[SessionState]] = None,
    ) -> List[ConversationSession]:
        db = self._session_factory()
        try:
            query = db.query(ConversationSessionORM).filter(ConversationSessionORM.user_id == user_id)
            if states is not None:
                query = query.filter(ConversationSessionORM.state.in_([s.value for s in states]))
            rows = query.order_by(ConversationSessionORM.updated_at.desc()).offset(offset).limit(limit).all()
            return [orm.to_domain() for orm in rows]
        finally:
            db.close()

    def delete(self, session_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = (
                db.query(ConversationSessionORM)
                .filter(ConversationSessionORM.session_id == session_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted > 0
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to delete session", session_id) from exc
        finally:
            db.close()

    def list_active_older_than(self, idle: timedelta, *, limit: Optional[int] = None) -> List[str]:
        cutoff = self._clock() - idle
        db = self._session_factory()
        try:
            query = (
                db.query(ConversationSessionORM.session_id)
                .filter(
                    ConversationSessionORM.state.in_(_SWEEPABLE),
                    ConversationSessionORM.updated_at < cutoff,
                )
                .order_by(ConversationSessionORM.updated_at.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [row.session_id for row in query.all()]
        finally:
            db.close()

    def batch_abandon(
        self, session_ids: Iterable[str], reason: str, *, idle: Optional[timedelta] = None
    ) -> List[str]:
        ids = list(dict.fromkeys(session_ids))
        if not ids:
            return []
        now = self._clock()
        db = self._session_factory()
        try:
            query = db.query(
                ConversationSessionORM.session_id,
                ConversationSessionORM.version,
                ConversationSessionORM.session_metadata,
            ).filter(
                ConversationSessionORM.session_id.in_(ids),
                ConversationSessionORM.state.in_(_SWEEPABLE),
            )
            if idle is not None:
                query = query.filter(ConversationSessionORM.updated_at < now - idle)
            query = query.order_by(ConversationSessionORM.id)

            abandoned: List[str] = []
            for row in query.all():
                # Administrative write: updated_at stays put. The version and
                # idle guards skip rows a request wrote since the select.
                stmt = (
                    update(ConversationSessionORM)
                    .where(
                        ConversationSessionORM.session_id == row.session_id,
                        ConversationSessionORM.version == row.version,
                        ConversationSessionORM.state.in_(_SWEEPABLE),
                    )
                    .values(
                        state=SessionState.ABANDONED.value,
                        session_metadata={
                            **(row.session_metadata or {}),
                            "abandon_reason": reason,
                            "abandoned_at": now.isoformat(),
                        },
                        version=row.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if idle is not None:
                    stmt = stmt.where(ConversationSessionORM.updated_at < now - idle)
                if db.execute(stmt).rowcount:
                    abandoned.append(row.session_id)
            db.commit()
            return abandoned
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to abandon sessions") from exc
        finally:
            db.close()

    def list_needing_autosave(self, grace: timedelta, *, limit: int) -> List[ConversationSession]:
        cutoff = self._clock() - grace
        db = self._session_factory()
        try:
            rows = (
                db.query(ConversationSessionORM)
                .filter(
                    ConversationSessionORM.state == SessionState.ACTIVE.value,
                    ConversationSessionORM.updated_at < cutoff,
                    (ConversationSessionORM.autosaved_at.is_(None))
                    | (ConversationSessionORM.autosaved_at < ConversationSessionORM.updated_at),
                )
                .order_by(ConversationSessionORM.updated_at.asc())
                .limit(limit)
                .all()
            )
            return [orm.to_domain() for orm in rows]
        finally:
            db.close()

    def list_idle_between(
        self, warning: timedelta, hard: timedelta, *, limit: Optional[int] = None
    ) -> List[ConversationSession]:
        now = self._clock()
        db = self._session_factory()
        try:
            query = (
                db.query(ConversationSessionORM)
                .filter(
                    ConversationSessionORM.state.in_(_SWEEPABLE),
                    ConversationSessionORM.updated_at < now - warning,
                    ConversationSessionORM.updated_at >= now - hard,
                )
                .order_by(ConversationSessionORM.updated_at.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return [orm.to_domain() for orm in query.all()]
        finally:
            db.close()

    def count_active_for_user(self, user_id: str) -> int:
        db = self._session_factory()
        try:
            return (
                db.query(func.count(ConversationSessionORM.id))
                .filter(
                    ConversationSessionORM.user_id == user_id,
                    ConversationSessionORM.state == SessionState.ACTIVE.value,
                )
                .scalar()
                or 0
            )
        finally:
            db.close()

    def oldest_active_for_user(self, user_id: str) -> Optional[ConversationSession]:
        db = self._session_factory()
        try:
            orm = (
                db.query(ConversationSessionORM)
                .filter(
                    ConversationSessionORM.user_id == user_id,
                    ConversationSessionORM.state == SessionState.ACTIVE.value,
                )
                .order_by(ConversationSessionORM.updated_at.asc())
                .first()
            )
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def touch(self, session_id: str) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(ConversationSessionORM)
                .where(ConversationSessionORM.session_id == session_id)
                .values(updated_at=self._clock(), version=ConversationSessionORM.version + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount > 0
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to extend session", session_id) from exc
        finally:
            db.close()
