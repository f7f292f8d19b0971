from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_none,
)

from src.course_copilot.config import settings
from src.course_copilot.domain.models.conversation_session import ConversationSession
from src.course_copilot.errors import PersistenceError, StaleSessionError
from src.course_copilot.services.sessions.service import SessionService, session_service

logger = logging.getLogger("autosave")

AUTOSAVE_CHECKPOINT = "autosave"


@dataclass
class AutoSaveSummary:
    selected: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0
    retries: int = 0
    failed_ids: List[str] = field(default_factory=list)


class AutoSaveScheduler:
    """Flushes sessions whose content changed since their last auto-save.

    Auto-saving is an administrative write: it records a checkpoint and the
    content timestamp it covered, which never moves ``updated_at``.
    """

    def __init__(
        self,
        sessions: Optional[SessionService] = None,
        *,
        batch_size: Optional[int] = None,
        grace_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait_seconds: Optional[float] = None,
    ) -> None:
        self._sessions = sessions or session_service
        self._batch_size = batch_size or settings.autosave_batch_size
        self._grace = timedelta(
            seconds=grace_seconds if grace_seconds is not None else settings.autosave_grace_seconds
        )
        self._attempts = max(1, retry_attempts or settings.autosave_retry_attempts)
        wait = settings.autosave_retry_wait_seconds if retry_wait_seconds is None else retry_wait_seconds
        self._wait = wait_exponential_jitter(initial=wait, max=wait * 8, jitter=wait) if wait > 0 else wait_none()

    def run_once(self) -> AutoSaveSummary:
        summary = AutoSaveSummary()
        candidates = self._sessions.repository.list_needing_autosave(self._grace, limit=self._batch_size)
        summary.selected = len(candidates)

        for session in candidates:
            outcome = self._save_one(session, summary)
            if outcome is True:
                summary.saved += 1
            elif outcome is None:
                summary.skipped += 1
            else:
                summary.failed += 1
                summary.failed_ids.append(session.session_id)

        if summary.selected:
            logger.info(
                "Auto-save run: %d selected, %d saved, %d skipped, %d failed",
                summary.selected,
                summary.saved,
                summary.skipped,
                summary.failed,
            )
        return summary

    def _save_one(self, session: ConversationSession, summary: AutoSaveSummary) -> Optional[bool]:
        """Return True when saved, None when skipped, False after exhausting retries."""

        def count_retry(retry_state: RetryCallState) -> None:
            summary.retries += 1
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Auto-save of %s failed (attempt %d/%d): %s",
                session.session_id,
                retry_state.attempt_number,
                self._attempts,
                getattr(exc, "message", exc),
            )

        retrying = Retrying(
            retry=retry_if_exception_type(PersistenceError) & retry_if_not_exception_type(StaleSessionError),
            stop=stop_after_attempt(self._attempts),
            wait=self._wait,
            before_sleep=count_retry,
            reraise=True,
        )
        current = session
        try:
            for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        current = self._sessions.repository.get(session.session_id)
                        if current is None:
                            return None
                    self._flush(current)
        except StaleSessionError:
            # A request saved it meanwhile; the next run picks it up if still dirty.
            logger.info("Skipping auto-save of %s: modified concurrently", session.session_id)
            return None
        except PersistenceError:
            logger.error("Giving up auto-save of %s after %d attempts", session.session_id, self._attempts)
            return False
        return True

    def _flush(self, session: ConversationSession) -> None:
        session.create_checkpoint(AUTOSAVE_CHECKPOINT)
        session.autosaved_at = session.updated_at
        session.metadata["autosave_count"] = int(session.metadata.get("autosave_count", 0)) + 1
        self._sessions.save_session(session)


autosave_scheduler = AutoSaveScheduler()
