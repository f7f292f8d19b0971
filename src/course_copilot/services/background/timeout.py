from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.course_copilot.config import settings
from src.course_copilot.domain.models.conversation_session import ConversationSession, utcnow
from src.course_copilot.errors import PersistenceError
from src.course_copilot.infra.db.inmemory import Clock
from src.course_copilot.infra.db.repositories import SWEEPABLE_STATES
from src.course_copilot.services.drafts.service import DraftService, draft_service
from src.course_copilot.services.notifications.service import (
    Notification,
    NotificationChannel,
    notification_channel,
)
from src.course_copilot.services.sessions.service import SessionService, session_service

logger = logging.getLogger("timeouts")

WARNED_FOR_KEY = "timeout_warning_for"


@dataclass
class TimeoutSummary:
    warned: int = 0
    abandoned: int = 0
    drafts_purged: int = 0
    errors: List[str] = field(default_factory=list)


class TimeoutMonitor:
    """Warns about idle sessions and abandons the ones past the hard limit.

    Idle time is measured from ``updated_at``. A session is warned at most
    once per idle period: the warning remembers the ``updated_at`` it was
    issued for.
    """

    def __init__(
        self,
        sessions: Optional[SessionService] = None,
        drafts: Optional[DraftService] = None,
        channel: Optional[NotificationChannel] = None,
        *,
        warning_minutes: Optional[float] = None,
        timeout_minutes: Optional[float] = None,
        batch_limit: Optional[int] = None,
        purge_drafts: Optional[bool] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._clock = clock
        self._sessions = sessions or session_service
        self._drafts = drafts or draft_service
        self._channel = channel or notification_channel
        self.warning = timedelta(minutes=warning_minutes or settings.timeout_warning_minutes)
        self.timeout = timedelta(minutes=timeout_minutes or settings.timeout_minutes)
        if self.warning >= self.timeout:
            raise ValueError("The warning threshold must be shorter than the timeout")
        self._batch_limit = batch_limit or settings.sweep_batch_limit
        self._purge_drafts = settings.purge_drafts_on_abandon if purge_drafts is None else purge_drafts

    @property
    def reason(self) -> str:
        return f"Session timed out after {int(self.timeout.total_seconds() // 60)} minutes of inactivity"

    def run_once(self) -> TimeoutSummary:
        summary = TimeoutSummary()
        self._send_warnings(summary)
        self._sweep(summary)
        if summary.warned or summary.abandoned or summary.errors:
            logger.info(
                "Timeout run: %d warned, %d abandoned, %d drafts purged, %d errors",
                summary.warned,
                summary.abandoned,
                summary.drafts_purged,
                len(summary.errors),
            )
        return summary

    def _send_warnings(self, summary: TimeoutSummary) -> None:
        repository = self._sessions.repository
        for session in repository.list_idle_between(self.warning, self.timeout, limit=self._batch_limit):
            marker = session.updated_at.isoformat()
            if session.metadata.get(WARNED_FOR_KEY) == marker:
                continue
            status = self.session_status(session)
            try:
                self._channel.notify(
                    Notification(
                        user_id=session.user_id,
                        session_id=session.session_id,
                        kind="timeout_warning",
                        payload={"seconds_until_timeout": status["seconds_until_timeout"]},
                    )
                )
                session.metadata[WARNED_FOR_KEY] = marker
                self._sessions.save_session(session)
                summary.warned += 1
            except PersistenceError as exc:
                logger.warning("Could not record timeout warning for %s: %s", session.session_id, exc.message)
                summary.errors.append(session.session_id)

    def _sweep(self, summary: TimeoutSummary) -> None:
        repository = self._sessions.repository
        expired = repository.list_active_older_than(self.timeout, limit=self._batch_limit)
        if not expired:
            return
        owners = {sid: s.user_id for sid, s in repository.get_many(expired).items()}
        try:
            # Re-checks idleness at write time: a turn landing after the listing keeps its session.
            abandoned = repository.batch_abandon(expired, self.reason, idle=self.timeout)
        except PersistenceError as exc:
            logger.error("Timeout sweep failed to abandon %d sessions: %s", len(expired), exc.message)
            summary.errors.extend(expired)
            return
        summary.abandoned = len(abandoned)
        if len(abandoned) < len(expired):
            logger.info("%d sessions became active again before the sweep", len(expired) - len(abandoned))

        for session_id in abandoned:
            if self._purge_drafts:
                try:
                    summary.drafts_purged += self._drafts.delete_session_drafts(session_id)
                except PersistenceError as exc:
                    logger.warning("Could not purge drafts of %s: %s", session_id, exc.message)
                    summary.errors.append(session_id)
            if session_id in owners:
                self._channel.notify(
                    Notification(
                        user_id=owners[session_id],
                        session_id=session_id,
                        kind="session_expired",
                        payload={"reason": self.reason},
                    )
                )

    def session_status(self, session: ConversationSession, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Heartbeat view of a session's idle clock."""

        now = now or self._clock()
        idle = now - session.updated_at
        remaining = self.timeout - idle
        sweepable = session.state in SWEEPABLE_STATES
        return {
            "session_id": session.session_id,
            "state": session.state.value,
            "idle_seconds": max(0, int(idle.total_seconds())),
            "seconds_until_timeout": max(0, int(remaining.total_seconds())) if sweepable else None,
            "needs_warning": sweepable and self.warning <= idle < self.timeout,
            "expired": sweepable and idle >= self.timeout,
        }


timeout_monitor = TimeoutMonitor()
