from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from gigaid.context import get_correlation_id

MAX_AUDIT_ENTRIES = 1000

audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)

SYSTEM_ACTOR = "nba-engine"


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]
