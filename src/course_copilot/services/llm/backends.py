from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from src.course_copilot.config import settings

PURPOSE_CHAT = "chat"
PURPOSE_LESSON = "lesson_generation"


@dataclass(frozen=True)
class LLMOptions:
    temperature: float = 0.7
    max_tokens: int = 2000


@dataclass
class LLMResponse:
    """Result of one model call.

    Backends report failures through ``error``/``message`` instead of raising,
    so callers can surface the provider's message verbatim. ``structured_data``
    is set by backends able to return the outline as a separate payload.
    """

    content: str = ""
    error: bool = False
    message: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    structured_data: Optional[Dict[str, Any]] = None

    @property
    def total_tokens(self) -> int:
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"])
        return int(self.usage.get("prompt_tokens", 0)) + int(self.usage.get("completion_tokens", 0))


class LLMBackend(Protocol):
    """Protocol for language model backends."""

    def generate(self, prompt: str, purpose: str, options: LLMOptions) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4)


class DemoLLMBackend:
    """Deterministic, keyword-driven backend used for tests and local development.

    Asking to create a course yields a short reply with an embedded ```json
    outline block; anything else gets a clarifying question. Lesson generation
    returns a fixed markdown skeleton for the requested lesson.
    """

    _TOPIC_RE = re.compile(r"([A-Za-z0-9#+.\-]+)\s+course\b", re.IGNORECASE)
    _PROJECT_RE = re.compile(r"\bwith an? ([\w\- ]+?) project\b", re.IGNORECASE)
    _DURATION_RE = re.compile(r"\b(\d+)[- ]hour", re.IGNORECASE)

    def generate(self, prompt: str, purpose: str, options: LLMOptions) -> LLMResponse:
        if purpose == PURPOSE_LESSON:
            content = self._lesson(prompt)
        else:
            message = self._last_user_message(prompt)
            lower = message.lower()
            if "course" in lower and any(word in lower for word in ("create", "build", "make", "generate")):
                content = self._outline_reply(message)
            else:
                content = (
                    "Happy to help you plan this course. Could you tell me who the target audience is, "
                    "what learners should be able to do afterwards, roughly how long the course should be, "
                    "and whether it should include hands-on exercises?"
                )
        return LLMResponse(
            content=content,
            usage={
                "prompt_tokens": _estimate_tokens(prompt),
                "completion_tokens": _estimate_tokens(content),
            },
        )

    @staticmethod
    def _last_user_message(prompt: str) -> str:
        _, _, tail = prompt.rpartition("\n\nUser: ")
        message, _, _ = tail.partition("\n\nAssistant:")
        return message.strip()

    def _outline_reply(self, message: str) -> str:
        topic_match = self._TOPIC_RE.search(message)
        topic = topic_match.group(1) if topic_match else "Course"
        level = "Beginners" if "beginner" in message.lower() else "Everyone"
        duration = self._DURATION_RE.search(message)

        sections = [
            {
                "title": f"Getting Started with {topic}",
                "description": f"Set up a working {topic} environment.",
                "lessons": [
                    {"title": f"What is {topic}?", "type": "text", "duration": "15"},
                    {"title": "Installing the tools", "type": "text", "duration": "20"},
                ],
            },
            {
                "title": f"{topic} Fundamentals",
                "description": "Core syntax and concepts.",
                "lessons": [
                    {"title": "Variables and types", "type": "text", "duration": "30"},
                    {"title": "Control flow", "type": "text", "duration": "30"},
                    {"title": "Functions", "type": "text", "duration": "30"},
                ],
            },
        ]
        project = self._PROJECT_RE.search(message)
        if project:
            name = project.group(1).strip()
            sections.append(
                {
                    "title": f"Project: Build a {name}",
                    "description": f"Apply everything by building a {name}.",
                    "lessons": [
                        {"title": "Planning the project", "type": "text", "duration": "20"},
                        {"title": f"Building the {name}", "type": "text", "duration": "60"},
                    ],
                }
            )

        outline = {
            "title": f"{topic} for {level}",
            "description": f"A practical introduction to {topic}.",
            "sections": sections,
            "settings": {"duration_hours": int(duration.group(1)) if duration else None},
        }
        block = json.dumps(outline, indent=2)
        return (
            "Great, I have everything I need. Here is the course outline:\n\n"
            f"```json\n{block}\n```\n\n"
            "Review it and create the course when you are ready, or tell me what to change."
        )

    @staticmethod
    def _lesson(prompt: str) -> str:
        match = re.search(r'Lesson: "([^"]*)"', prompt)
        title = match.group(1) if match else "Lesson"
        return (
            f"## {title}\n\n"
            "### Learning objectives\n\n- Understand the key idea of this lesson\n\n"
            "### Content\n\nIntroduce the concept, walk through an example, and summarise.\n\n"
            "### Exercise\n\nPractise the concept with a short task."
        )


class OpenAILLMBackend:
    """Backend using the OpenAI Responses API.

    Requires OPENAI_API_KEY; the model name comes from LLM_MODEL. Provider
    errors are returned as error responses with the provider's message.
    """

    def __init__(self, model: str | None = None) -> None:  # pragma: no cover - external service
        self._model = model or settings.llm_model
        self._client = None

    def _get_client(self):  # pragma: no cover - external service
        if self._client is not None:
            return self._client

        api_key = settings.openai_api_key
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY must be set to use OpenAILLMBackend")

        try:
            from openai import OpenAI
        except ImportError as exc:
            raise RuntimeError(
                "OpenAILLMBackend requires the 'openai' package. Install it with 'pip install openai'"
            ) from exc

        self._client = OpenAI(api_key=api_key, timeout=settings.llm_timeout_seconds)
        return self._client

    def generate(self, prompt: str, purpose: str, options: LLMOptions) -> LLMResponse:  # pragma: no cover - external service
        from openai import OpenAIError

        client = self._get_client()
        try:
            response = client.responses.create(
                model=self._model,
                input=[{"role": "user", "content": prompt}],
                temperature=options.temperature,
                max_output_tokens=options.max_tokens,
            )
        except OpenAIError as exc:
            return LLMResponse(error=True, message=str(exc))

        raw_text: str | None = None
        for output in response.output:
            for item in getattr(output, "content", None) or []:
                if getattr(item, "type", "") == "output_text" and getattr(item, "text", None):
                    raw_text = item.text
                    break
            if raw_text is not None:
                break

        if raw_text is None:
            return LLMResponse(error=True, message="The model returned no text output")

        usage: Dict[str, int] = {}
        if getattr(response, "usage", None) is not None:
            usage = {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.total_tokens,
            }
        return LLMResponse(content=raw_text, usage=usage)


def get_llm_backend_from_env() -> LLMBackend:
    """Select a language model backend based on LLM_BACKEND.

    Supports:
    - "demo" (default) – deterministic keyword-driven replies
    - "openai" – OpenAILLMBackend using the OpenAI API
    """

    backend_name = settings.llm_backend.lower()
    if backend_name == "openai":
        return OpenAILLMBackend()
    return DemoLLMBackend()
