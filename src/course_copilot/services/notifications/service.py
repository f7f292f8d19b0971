from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol

from src.course_copilot.domain.models.conversation_session import utcnow

logger = logging.getLogger("notifications")


@dataclass
class Notification:
    user_id: str
    session_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class NotificationChannel(Protocol):
    """Delivers client-visible notices such as idle-timeout warnings."""

    def notify(self, notification: Notification) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryNotificationChannel:
    """Queues notifications per user until a client polls for them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: Dict[str, List[Notification]] = {}

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self._queues.setdefault(notification.user_id, []).append(notification)
        logger.info("Queued %s notice for session %s", notification.kind, notification.session_id)

    def pending(self, user_id: str) -> List[Notification]:
        with self._lock:
            return list(self._queues.get(user_id, []))

    def drain(self, user_id: str) -> List[Notification]:
        with self._lock:
            return self._queues.pop(user_id, [])


notification_channel = InMemoryNotificationChannel()
