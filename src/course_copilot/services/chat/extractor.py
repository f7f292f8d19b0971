from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.errors import ExtractionError
from src.course_copilot.services.llm.backends import LLMResponse

logger = logging.getLogger("chat")

# First fenced block tagged as json. Non-greedy, so a second block is never
# swallowed into the first.
FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")


@dataclass(frozen=True)
class Extraction:
    """Outcome of splitting a model reply into chat text and structured data."""

    message: str
    data: Optional[Dict[str, Any]] = None
    # A fenced block was present but did not hold a JSON object.
    malformed: bool = False

    @property
    def outline(self) -> Optional[CourseOutline]:
        return parse_outline(self.data) if self.data is not None else None


def _parse_block(block: str) -> Dict[str, Any]:
    try:
        value = json.loads(block)
    except ValueError as exc:
        raise ExtractionError(f"Fenced block is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ExtractionError(f"Fenced block holds a JSON {type(value).__name__}, not an object")
    return value


def extract(raw: str) -> Extraction:
    """Split a raw reply into chat text and the first embedded JSON object.

    When the first ```json block parses to an object, the block is cut out of
    the reply and the rest is stripped. Otherwise the reply passes through
    unchanged. Pure: the same input always yields the same result.
    """

    match = FENCED_JSON_RE.search(raw)
    if match is None:
        return Extraction(message=raw)
    try:
        data = _parse_block(match.group(1))
    except ExtractionError as exc:
        logger.debug("Ignoring structured block: %s", exc.message)
        return Extraction(message=raw, malformed=True)
    remainder = (raw[: match.start()] + raw[match.end() :]).strip()
    return Extraction(message=remainder, data=data)


def extract_response(response: LLMResponse) -> Extraction:
    """Prefer a structured payload from the backend, fall back to the fenced block."""

    if isinstance(response.structured_data, dict):
        return Extraction(message=response.content.strip(), data=response.structured_data)
    return extract(response.content)


def parse_outline(data: Dict[str, Any]) -> Optional[CourseOutline]:
    try:
        return CourseOutline.model_validate(data)
    except ValidationError as exc:
        logger.debug("Structured block is not a course outline: %s", exc.error_count())
        return None


def is_ready(outline: Optional[CourseOutline]) -> bool:
    """Acceptance rule: a non-empty title and at least one section holding a lesson."""

    return outline is not None and outline.is_ready()
