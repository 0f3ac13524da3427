from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pipeline_engine.context import get_correlation_id, get_transition_depth

audit_entries: list[dict[str, Any]] = []


def record(
    actor_id: str,
    tenant_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_id": actor_id,
        "tenant_id": tenant_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "transition_depth": get_transition_depth(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def history(tenant_id: str, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    """Entries for one record, oldest first."""
    return [
        entry
        for entry in audit_entries
        if entry["tenant_id"] == tenant_id and entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]
