from __future__ import annotations

from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.course_copilot.domain.models.conversation_session import utcnow
from src.course_copilot.domain.models.lesson_draft import LessonDraft
from src.course_copilot.errors import PersistenceError
from src.course_copilot.infra.db.inmemory import Clock
from src.course_copilot.infra.db.models import LessonDraftORM
from src.course_copilot.infra.db.repositories import LessonDraftRepository
from src.course_copilot.infra.db.session import SessionFactory


class SqlLessonDraftRepository(LessonDraftRepository):
    """SQLAlchemy-backed draft storage keyed by ``(session_id, section_id, lesson_id)``."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _filter(self, db, session_id: str, section_id: str, lesson_id: str):
        return db.query(LessonDraftORM).filter(
            LessonDraftORM.session_id == session_id,
            LessonDraftORM.section_id == section_id,
            LessonDraftORM.lesson_id == lesson_id,
        )

    def upsert(
        self,
        session_id: str,
        section_id: str,
        lesson_id: str,
        content: str,
        order_index: int = 0,
    ) -> LessonDraft:
        now = self._clock()
        # A concurrent insert of the same key loses the unique-constraint race;
        # the second attempt then finds the row and updates it.
        for attempt in range(2):
            db = self._session_factory()
            try:
                orm = self._filter(db, session_id, section_id, lesson_id).one_or_none()
                if orm is None:
                    orm = LessonDraftORM(
                        session_id=session_id,
                        section_id=section_id,
                        lesson_id=lesson_id,
                        content=content,
                        order_index=order_index,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(orm)
                else:
                    orm.content = content
                    orm.order_index = order_index
                    orm.updated_at = now
                db.commit()
                return orm.to_domain()
            except IntegrityError:
                db.rollback()
                if attempt:
                    raise PersistenceError("Failed to save draft", session_id)
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError("Failed to save draft", session_id) from exc
            finally:
                db.close()
        raise PersistenceError("Failed to save draft", session_id)

    def get(self, session_id: str, section_id: str, lesson_id: str) -> Optional[LessonDraft]:
        db = self._session_factory()
        try:
            orm = self._filter(db, session_id, section_id, lesson_id).one_or_none()
            return orm.to_domain() if orm is not None else None
        finally:
            db.close()

    def list_for_session(self, session_id: str) -> List[LessonDraft]:
        db = self._session_factory()
        try:
            rows = (
                db.query(LessonDraftORM)
                .filter(LessonDraftORM.session_id == session_id)
                .order_by(LessonDraftORM.section_id.asc(), LessonDraftORM.order_index.asc())
                .all()
            )
            return [orm.to_domain() for orm in rows]
        finally:
            db.close()

    def delete(self, session_id: str, section_id: str, lesson_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = self._filter(db, session_id, section_id, lesson_id).delete(synchronize_session=False)
            db.commit()
            return deleted > 0
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to delete draft", session_id) from exc
        finally:
            db.close()

    def delete_section(self, session_id: str, section_id: str) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(LessonDraftORM)
                .filter(LessonDraftORM.session_id == session_id, LessonDraftORM.section_id == section_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to delete section drafts", session_id) from exc
        finally:
            db.close()

    def delete_session(self, session_id: str) -> int:
        db = self._session_factory()
        try:
            deleted = (
                db.query(LessonDraftORM)
                .filter(LessonDraftORM.session_id == session_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to delete session drafts", session_id) from exc
        finally:
            db.close()

    def update_order(self, session_id: str, section_id: str, lesson_id: str, order_index: int) -> bool:
        db = self._session_factory()
        try:
            updated = self._filter(db, session_id, section_id, lesson_id).update(
                {LessonDraftORM.order_index: order_index, LessonDraftORM.updated_at: self._clock()},
                synchronize_session=False,
            )
            db.commit()
            return updated > 0
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to reorder draft", session_id) from exc
        finally:
            db.close()
