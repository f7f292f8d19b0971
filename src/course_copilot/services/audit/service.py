from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.course_copilot.security import get_current_subject

logger = logging.getLogger("audit")

_SCALARS = (str, int, float, bool, type(None))


def _scrub(extra: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Only identifiers, counts and flags are kept; anything nested is dropped.
    if not extra:
        return None
    return {str(key): value for key, value in extra.items() if isinstance(value, _SCALARS)}


class AuditService:
    """Writes one JSON line per user-visible copilot action.

    Message bodies and lesson content must never be passed in ``extra``.
    """

    def __init__(self, log: logging.Logger = logger) -> None:
        self._log = log

    def log_event(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        user_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "user_id": user_id,
            "subject": get_current_subject(),
            "extra": _scrub(extra),
        }
        try:
            self._log.info(json.dumps(record, default=str))
        except (TypeError, ValueError):
            self._log.warning("audit event %s for %s could not be serialized", action, resource_id)


audit_service = AuditService()
