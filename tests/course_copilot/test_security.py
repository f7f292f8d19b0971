import json
import logging

from httpx import ASGITransport, AsyncClient
from fastapi import status

from src.course_copilot.config import settings
from src.course_copilot.main import app
from src.course_copilot.security import configured_keys, subject_for_key
from src.course_copilot.services.audit.service import AuditService


def test_configured_keys_ignores_blank_entries():
    assert configured_keys(" k1, ,k2,") == frozenset({"k1", "k2"})
    assert configured_keys("") == frozenset()


def test_subject_does_not_expose_the_key():
    subject = subject_for_key("super-secret")
    assert subject.startswith("key:")
    assert "super-secret" not in subject
    assert subject == subject_for_key("super-secret")


async def test_api_key_required_when_auth_enabled(monkeypatch):
    monkeypatch.setattr(settings, "enable_api_auth", True)
    monkeypatch.setattr(settings, "api_keys", "k1,k2")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        missing = await ac.get("/api/v1/sessions/", headers={"X-User-ID": "auth-user"})
        wrong = await ac.get("/api/v1/sessions/", headers={"X-User-ID": "auth-user", "X-API-Key": "nope"})
        ok = await ac.get("/api/v1/sessions/", headers={"X-User-ID": "auth-user", "X-API-Key": "k2"})
        health = await ac.get("/api/v1/health")

    assert missing.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert ok.status_code == status.HTTP_200_OK
    assert health.status_code == status.HTTP_200_OK


async def test_auth_enabled_without_keys_rejects(monkeypatch):
    monkeypatch.setattr(settings, "enable_api_auth", True)
    monkeypatch.setattr(settings, "api_keys", None)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/api/v1/sessions/", headers={"X-API-Key": "k1"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_audit_drops_nested_payloads(caplog):
    with caplog.at_level(logging.INFO, logger="audit"):
        AuditService().log_event(
            action="save_draft",
            resource_type="draft",
            resource_id="cs_1/0/1",
            extra={"length": 12, "body": {"text": "lesson content"}},
        )

    event = json.loads(caplog.records[-1].getMessage())
    assert event["extra"] == {"length": 12}
    assert event["subject"] is None
