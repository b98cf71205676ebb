from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings
from leadflow.core.events import event_bus

ENVELOPE_VERSION = 1

published_events: deque[dict[str, Any]] = deque(maxlen=get_settings().event_retention)


def build_envelope(event_type: str, actor_user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": get_correlation_id(),
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    """Keep the envelope for inspection and hand it to in-process subscribers of its type."""
    envelope.setdefault("correlation_id", get_correlation_id())
    published_events.append(envelope)
    event_bus.publish(envelope["event_type"], envelope)
