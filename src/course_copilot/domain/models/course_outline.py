from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OutlineLesson(BaseModel):
    """A single lesson inside an outline section.

    Model output is loosely shaped, so unknown keys are kept and numeric
    durations are accepted as well as strings.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[Union[str, int]] = None
    title: str = ""
    content: Optional[str] = None
    type: str = "text"
    duration: Optional[str] = None

    @field_validator("duration", mode="before")
    @classmethod
    def _coerce_duration(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class OutlineSection(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[str, int]] = None
    title: str = ""
    description: Optional[str] = None
    lessons: List[OutlineLesson] = Field(default_factory=list)


class CourseOutline(BaseModel):
    """Nested title/sections/lessons structure describing a course-to-be."""

    model_config = ConfigDict(extra="allow")

    title: str = ""
    description: Optional[str] = None
    sections: List[OutlineSection] = Field(default_factory=list)
    settings: Optional[Dict[str, Any]] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    def is_ready(self) -> bool:
        """True when the outline has a title and at least one lesson."""

        if not self.title.strip():
            return False
        return any(section.lessons for section in self.sections)

    def lesson_count(self) -> int:
        return sum(len(section.lessons) for section in self.sections)


# Key under which the accepted outline is kept inside collected data.
OUTLINE_KEY = "course_structure"

COLLECTED_DATA_SCHEMA_VERSION = 1


class CollectedData(BaseModel):
    """Conversation-scoped state gathered while authoring.

    The outline lives in its own typed slot; anything else the conversation
    needs to remember goes into ``values``.
    """

    schema_version: int = COLLECTED_DATA_SCHEMA_VERSION
    course_structure: Optional[CourseOutline] = None
    values: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_legacy(cls, raw: Optional[Dict[str, Any]]) -> "CollectedData":
        """Accept both the versioned shape and a flat untyped map."""

        if not raw:
            return cls()
        if "schema_version" in raw:
            return cls.model_validate(raw)
        values = dict(raw)
        outline = values.pop(OUTLINE_KEY, None)
        return cls(
            course_structure=CourseOutline.model_validate(outline) if isinstance(outline, dict) else None,
            values=values,
        )

    def is_empty(self) -> bool:
        return self.course_structure is None and not self.values

    def snapshot(self) -> Dict[str, Any]:
        """Flat view used in prompts and client payloads."""

        data: Dict[str, Any] = dict(self.values)
        if self.course_structure is not None:
            data[OUTLINE_KEY] = self.course_structure.model_dump(exclude_none=True)
        return data
