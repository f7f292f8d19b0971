from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional

from src.course_copilot.domain.models.conversation_session import ChatMessage

_BASE_PROMPT = (
    "You are an AI assistant specialized in helping create and improve online courses. "
    "You have expertise in curriculum design, learning objectives, content structuring, "
    "and educational best practices."
)

OUTLINE_TEMPLATE = """```json
{
  "title": "Course Title",
  "description": "Course description",
  "sections": [
    {
      "title": "Section 1 Title",
      "description": "Section description",
      "lessons": [
        {
          "title": "Lesson Title",
          "content": "Lesson content (can be HTML)",
          "type": "text",
          "duration": "15"
        }
      ]
    }
  ],
  "settings": {
    "course_progress": "enabled",
    "auto_advance": "enabled"
  },
  "categories": ["Category 1"],
  "tags": ["tag1", "tag2"]
}
```"""

_CREATION_PROMPT = (
    _BASE_PROMPT
    + " You are helping a user create a new course from scratch. Focus on understanding their "
    "topic, target audience, and learning goals, and help them structure a curriculum of "
    "sections and lessons."
    "\n\nIMPORTANT: When the user has provided:\n"
    "1. The subject/topic of the course\n"
    "2. Target audience\n"
    "3. Main objectives or what students will build/learn\n"
    "4. Approximate duration\n"
    "5. Whether it includes hands-on exercises\n\n"
    "you MUST generate the complete course structure immediately instead of asking more "
    "questions. If you need clarification, ask only 1-2 specific questions. Return the course "
    "structure in the following JSON format wrapped in a ```json code block:\n\n"
    + OUTLINE_TEMPLATE
)

_EDITING_PROMPT = (
    _BASE_PROMPT
    + " You are helping a user improve an existing course. Be specific about improvements and "
    "give concrete suggestions. When suggesting course modifications, include the updated "
    "structure as JSON wrapped in a ```json code block."
)

_DEFAULT_PROMPT = (
    _BASE_PROMPT
    + " Provide helpful, specific guidance for course creation and improvement. When providing "
    "course data, use JSON wrapped in a ```json code block."
)

SYSTEM_PROMPTS: Dict[str, str] = {
    "course_creation": _CREATION_PROMPT,
    "course_editing": _EDITING_PROMPT,
}


def system_prompt(context: str) -> str:
    return SYSTEM_PROMPTS.get(context, _DEFAULT_PROMPT)


def build_chat_prompt(
    context: str,
    history: Iterable[ChatMessage],
    message: str,
    collected: Optional[Dict[str, Any]] = None,
) -> str:
    """Render one turn as a single prompt string.

    Layout: system preamble, ``role: content`` history lines, the new user
    message, then the collected course data when there is any.
    """

    lines = "".join(f"\n{entry.role.value}: {entry.content}" for entry in history)
    prompt = f"{system_prompt(context)}\n\nConversation history:{lines}\n\nUser: {message}\n\nAssistant:"
    if collected:
        prompt += "\n\nCurrent collected course data: " + json.dumps(collected, sort_keys=True)
    return prompt


def build_lesson_prompt(
    course_title: str,
    section_title: str,
    lesson_title: str,
    *,
    course_description: Optional[str] = None,
    instructions: Optional[str] = None,
) -> str:
    parts = [
        "You are an AI assistant helping to create engaging lesson content for online courses.",
        "",
        f'Course: "{course_title}"',
        f'Section: "{section_title}"',
        f'Lesson: "{lesson_title}"',
    ]
    if course_description:
        parts.append(f"Course context: {course_description[:200]}")
    if instructions:
        parts.append(f"Additional instructions: {instructions}")
    parts.extend(
        [
            "",
            "Write the complete lesson body in markdown with learning objectives, explanations "
            "with examples, and a short exercise. Return only the lesson content.",
        ]
    )
    return "\n".join(parts)
