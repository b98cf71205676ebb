from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings

audit_entries: deque[dict[str, Any]] = deque(maxlen=get_settings().audit_retention)


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Append one CRM change; the oldest entries fall off once retention is reached."""
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "changed_fields": _changed_fields(before, after),
            "before": before,
            "after": after,
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
