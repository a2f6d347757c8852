from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from crmflow.automation.models import AutomationLog


logger = logging.getLogger("crmflow.automation")

CIRCULAR_MARKER = "[Circular]"
MAX_DEPTH = 12
MAX_STRING_LENGTH = 10_000


def sanitize_payload(value: Any, *, max_depth: int = MAX_DEPTH) -> Any:
    """Return a JSON-safe copy of ``value``.

    Cycles become ``"[Circular]"``, anything nested deeper than ``max_depth``
    becomes ``"[MaxDepth]"`` and unknown objects fall back to ``repr``.
    """
    return _sanitize(value, set(), 0, max_depth)


def _sanitize(value: Any, seen: set[int], depth: int, max_depth: int) -> Any:
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return value if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, str):
        return value[:MAX_STRING_LENGTH]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return _sanitize(value.value, seen, depth, max_depth)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")[:MAX_STRING_LENGTH]

    if isinstance(value, (dict, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in seen:
            return CIRCULAR_MARKER
        if depth >= max_depth:
            return "[MaxDepth]"
        seen.add(marker)
        try:
            if isinstance(value, dict):
                return {str(key): _sanitize(item, seen, depth + 1, max_depth) for key, item in value.items()}
            items = sorted(value, key=repr) if isinstance(value, (set, frozenset)) else value
            return [_sanitize(item, seen, depth + 1, max_depth) for item in items]
        finally:
            seen.discard(marker)

    try:
        return repr(value)[:MAX_STRING_LENGTH]
    except Exception:
        return f"<{type(value).__name__}>"


class AuditLogger:
    def record(
        self,
        session: Session,
        *,
        automation_id: uuid.UUID,
        user_id: str,
        trigger_type: str,
        trigger_data: Any,
        conditions_met: bool,
        conditions_evaluated: list[dict[str, Any]],
        actions_executed: list[dict[str, Any]],
        status: str,
        error: str | None = None,
        enrollment_id: uuid.UUID | None = None,
    ) -> AutomationLog:
        sanitized_data = sanitize_payload(trigger_data)
        if not isinstance(sanitized_data, dict):
            sanitized_data = {"value": sanitized_data}

        entry = AutomationLog(
            automation_id=automation_id,
            enrollment_id=enrollment_id,
            user_id=user_id,
            trigger_type=trigger_type,
            trigger_data=sanitized_data,
            conditions_met=conditions_met,
            conditions_evaluated=sanitize_payload(conditions_evaluated) or [],
            actions_executed=sanitize_payload(actions_executed) or [],
            status=status,
            error=error[:2000] if error else None,
        )
        session.add(entry)
        logger.info(
            "automation.execution_logged",
            extra={
                "automation_id": str(automation_id),
                "enrollment_id": str(enrollment_id) if enrollment_id else None,
                "trigger_type": trigger_type,
                "status": status,
                "error": error,
            },
        )
        return entry


audit_logger = AuditLogger()
