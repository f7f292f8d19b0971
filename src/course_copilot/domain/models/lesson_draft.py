from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LessonDraft(BaseModel):
    """Persisted content for a single lesson, addressed independently of the outline.

    Identity is the ``(session_id, section_id, lesson_id)`` triple; section and
    lesson ids are opaque strings and may follow any addressing scheme the
    authoring client used.
    """

    session_id: str
    section_id: str
    lesson_id: str
    content: str = ""
    order_index: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.session_id, self.section_id, self.lesson_id)
