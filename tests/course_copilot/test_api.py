from datetime import datetime, timezone
from uuid import uuid4

from httpx import ASGITransport, AsyncClient
from fastapi import status

from src.course_copilot.main import app
from src.course_copilot.services.chat.orchestrator import chat_orchestrator
from src.course_copilot.services.llm.backends import DemoLLMBackend, LLMResponse

PHP_REQUEST = "Create a 4-hour PHP course for beginners with a todo-app project"


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _user() -> dict:
    return {"X-User-ID": f"user-{uuid4().hex[:8]}"}


async def _create(ac: AsyncClient, headers: dict, **body) -> str:
    response = await ac.post("/api/v1/sessions/", json=body, headers=headers)
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()["session_id"]


async def test_course_authoring_end_to_end():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)

        chat = await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": PHP_REQUEST}, headers=headers)
        assert chat.status_code == status.HTTP_200_OK
        turn = chat.json()
        assert turn["ready_to_materialize"] is True
        assert turn["current_step"] == "ready_to_create"
        assert turn["course_data"]["title"] == "PHP for Beginners"

        saved = await ac.put(
            f"/api/v1/sessions/{session_id}/drafts/sections/0/lessons/1",
            json={"content": "Installing PHP step by step", "order_index": 1},
            headers=headers,
        )
        assert saved.status_code == status.HTTP_200_OK
        await ac.put(
            f"/api/v1/sessions/{session_id}/drafts/sections/section_2/lessons/lesson_2_1",
            json={"content": "Variables in PHP"},
            headers=headers,
        )

        mapped = await ac.post(f"/api/v1/sessions/{session_id}/drafts/map", json={}, headers=headers)
        assert mapped.status_code == status.HTTP_200_OK
        sections = mapped.json()["outline"]["sections"]
        assert sections[0]["lessons"][1]["content"] == "Installing PHP step by step"
        assert sections[1]["lessons"][0]["content"] == "Variables in PHP"
        assert mapped.json()["report"]["matched_count"] == 2

        course = await ac.post("/api/v1/courses/", json={"session_id": session_id}, headers=headers)
        assert course.status_code == status.HTTP_200_OK
        created = course.json()
        assert created["success"] is True
        assert created["edit_url"] == f"/courses/{created['course_id']}/edit"

        session = (await ac.get(f"/api/v1/sessions/{session_id}", headers=headers)).json()
        assert session["state"] == "completed"
        assert session["title"] == "Course: PHP for Beginners"

        remaining = await ac.get(f"/api/v1/sessions/{session_id}/drafts/", headers=headers)
        assert remaining.json() == []

        again = await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": "hi"}, headers=headers)
        assert again.status_code == status.HTTP_409_CONFLICT


async def test_unknown_session_is_404():
    async with _client() as ac:
        response = await ac.get("/api/v1/sessions/cs_missing", headers=_user())
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["detail"]["error"] == "not_found"


async def test_other_users_cannot_read_a_session():
    async with _client() as ac:
        session_id = await _create(ac, _user())
        response = await ac.get(f"/api/v1/sessions/{session_id}", headers=_user())
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["detail"]["error"] == "permission"


async def test_collaborators_can_chat_but_not_delete():
    owner, guest = _user(), _user()
    async with _client() as ac:
        session_id = await _create(ac, owner)
        enabled = await ac.post(
            f"/api/v1/sessions/{session_id}/collaboration",
            json={"collaborators": [guest["X-User-ID"]]},
            headers=owner,
        )
        assert enabled.status_code == status.HTTP_200_OK

        chat = await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": "hello"}, headers=guest)
        assert chat.status_code == status.HTTP_200_OK
        delete = await ac.delete(f"/api/v1/sessions/{session_id}", headers=guest)
        assert delete.status_code == status.HTTP_403_FORBIDDEN


async def test_blank_message_is_rejected():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        response = await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": "  "}, headers=headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"]["error"] == "validation"


async def test_upstream_failure_is_reported_for_the_chat_window():
    class FailingBackend:
        def generate(self, prompt, purpose, options):
            return LLMResponse(error=True, message="rate limited")

    headers = _user()
    chat_orchestrator.use_backend(FailingBackend())
    try:
        async with _client() as ac:
            session_id = await _create(ac, headers)
            response = await ac.post(
                f"/api/v1/chat/{session_id}/messages", json={"message": "hello"}, headers=headers
            )
            session = (await ac.get(f"/api/v1/sessions/{session_id}", headers=headers)).json()
    finally:
        chat_orchestrator.use_backend(DemoLLMBackend())

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    detail = response.json()["detail"]
    assert detail["error"] == "upstream"
    assert detail["retryable"] is True
    assert detail["chat_message"]
    assert session["state"] == "active"
    assert session["messages"] == []


async def test_pause_blocks_chat_until_resumed():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        paused = await ac.post(f"/api/v1/sessions/{session_id}/pause", json={"reason": "break"}, headers=headers)
        assert paused.json()["state"] == "paused"

        blocked = await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": "hi"}, headers=headers)
        assert blocked.status_code == status.HTTP_409_CONFLICT

        resumed = await ac.post(f"/api/v1/sessions/{session_id}/resume", headers=headers)
        assert resumed.json()["state"] == "active"

        double = await ac.post(f"/api/v1/sessions/{session_id}/resume", headers=headers)
        assert double.status_code == status.HTTP_409_CONFLICT


async def test_materializing_without_an_outline_is_rejected():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        response = await ac.post("/api/v1/courses/", json={"session_id": session_id}, headers=headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


async def test_listing_and_session_limit():
    headers = _user()
    async with _client() as ac:
        ids = [await _create(ac, headers, title=f"Course {i}") for i in range(6)]
        listed = await ac.get("/api/v1/sessions/", params={"state": "active", "limit": 10}, headers=headers)
        first = await ac.get(f"/api/v1/sessions/{ids[0]}", headers=headers)

    assert len(listed.json()) == 5
    assert first.json()["state"] == "abandoned"
    assert first.json()["metadata"]["abandon_reason"] == "Auto-abandoned due to session limit"


async def test_export_then_import_creates_a_copy():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": PHP_REQUEST}, headers=headers)
        await ac.put(
            f"/api/v1/sessions/{session_id}/drafts/sections/0/lessons/0",
            json={"content": "Intro body"},
            headers=headers,
        )

        exported = (await ac.get(f"/api/v1/sessions/{session_id}/export", headers=headers)).json()
        assert exported["export_version"] == "1.0"
        assert len(exported["drafts"]) == 1

        imported = await ac.post("/api/v1/sessions/import", json={"payload": exported}, headers=headers)
        assert imported.status_code == status.HTTP_201_CREATED
        copy = imported.json()
        drafts = await ac.get(f"/api/v1/sessions/{copy['session_id']}/drafts/", headers=headers)

    assert copy["session_id"] != session_id
    assert copy["metadata"]["imported_from"] == session_id
    assert len(copy["messages"]) == 2
    assert drafts.json()[0]["content"] == "Intro body"


async def test_sync_heartbeat_and_extend():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        synced = await ac.post(
            f"/api/v1/sessions/{session_id}/sync",
            json={
                "snapshot": {
                    "client_id": "tablet",
                    "last_modified": datetime.now(timezone.utc).isoformat(),
                    "title": "From tablet",
                },
                "policy": "client_wins",
            },
            headers=headers,
        )
        assert synced.status_code == status.HTTP_200_OK
        assert "title" in synced.json()["applied_fields"]

        heartbeat = await ac.get(f"/api/v1/sessions/{session_id}/heartbeat", headers=headers)
        assert heartbeat.json()["expired"] is False
        assert heartbeat.json()["seconds_until_timeout"] > 0

        extended = await ac.post(f"/api/v1/sessions/{session_id}/extend", headers=headers)
        assert extended.status_code == status.HTTP_200_OK
        assert extended.json()["idle_seconds"] == 0


async def test_checkpoints_round_trip():
    headers = _user()
    async with _client() as ac:
        session_id = await _create(ac, headers)
        made = await ac.post(f"/api/v1/sessions/{session_id}/checkpoints", json={"name": "start"}, headers=headers)
        assert made.status_code == status.HTTP_201_CREATED
        await ac.post(f"/api/v1/chat/{session_id}/messages", json={"message": "hello"}, headers=headers)

        restored = await ac.post(f"/api/v1/sessions/{session_id}/checkpoints/start/restore", headers=headers)
        missing = await ac.post(f"/api/v1/sessions/{session_id}/checkpoints/nope/restore", headers=headers)

    assert restored.json()["messages"] == []
    assert missing.status_code == status.HTTP_404_NOT_FOUND


async def test_manual_background_runs():
    async with _client() as ac:
        autosave = await ac.post("/api/v1/system/autosave")
        timeouts = await ac.post("/api/v1/system/timeouts")
        notices = await ac.get("/api/v1/notifications", headers=_user())

    assert autosave.status_code == status.HTTP_200_OK
    assert "saved" in autosave.json()
    assert timeouts.status_code == status.HTTP_202_ACCEPTED
    assert notices.json() == []
