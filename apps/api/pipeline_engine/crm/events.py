from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar

from pipeline_engine.context import get_correlation_id, get_transition_depth
from pipeline_engine.core.events import InProcessEventBus

STAGE_TRANSITIONED = "crm.entity.stage_transitioned"
ENTITY_ESCALATED = "crm.entity.escalated"
ENTITY_CLOSED = "crm.entity.closed"
WEBHOOK_DELIVERED = "crm.webhook.delivered"
WEBHOOK_FAILED = "crm.webhook.failed"

OUTBOX_EVENT_TYPES = (STAGE_TRANSITIONED, ENTITY_ESCALATED, ENTITY_CLOSED)

logger = logging.getLogger("pipeline_engine.crm.events")


def serialize_value(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_value(item) for item in value]
    return value


@dataclass(frozen=True, kw_only=True)
class PipelineEvent:
    event_type: ClassVar[str] = ""

    tenant_id: str
    occurred_at: datetime
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)

    def to_payload(self) -> dict[str, Any]:
        excluded = {"tenant_id", "occurred_at", "event_id"}
        return {
            item.name: serialize_value(getattr(self, item.name))
            for item in fields(self)
            if item.name not in excluded
        }


@dataclass(frozen=True, kw_only=True)
class StageTransitioned(PipelineEvent):
    event_type: ClassVar[str] = STAGE_TRANSITIONED

    entity_id: uuid.UUID
    from_stage_id: uuid.UUID | None
    to_stage_id: uuid.UUID
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class EntityEscalated(PipelineEvent):
    event_type: ClassVar[str] = ENTITY_ESCALATED

    entity_id: uuid.UUID
    escalation_id: uuid.UUID
    level: int
    from_owner_id: str | None
    to_owner_id: str | None
    reason: str
    clock_id: uuid.UUID | None = None


@dataclass(frozen=True, kw_only=True)
class EntityClosed(PipelineEvent):
    event_type: ClassVar[str] = ENTITY_CLOSED

    entity_id: uuid.UUID
    status: str
    stage_id: uuid.UUID


@dataclass(frozen=True, kw_only=True)
class WebhookDelivered(PipelineEvent):
    event_type: ClassVar[str] = WEBHOOK_DELIVERED

    delivered_event_id: uuid.UUID
    endpoint_id: uuid.UUID
    url: str
    attempts: int


@dataclass(frozen=True, kw_only=True)
class WebhookFailed(PipelineEvent):
    event_type: ClassVar[str] = WEBHOOK_FAILED

    delivered_event_id: uuid.UUID
    endpoint_id: uuid.UUID
    url: str
    attempts: int
    error: str | None


def build_envelope(event: PipelineEvent) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_id": str(event.event_id),
        "event_type": event.event_type,
        "occurred_at": event.occurred_at.isoformat(),
        "tenant_id": event.tenant_id,
        "correlation_id": get_correlation_id(),
        "version": 1,
        "payload": event.to_payload(),
    }
    depth = get_transition_depth()
    if depth is not None:
        envelope["meta"] = {"transition_depth": depth}
    return envelope


class BusEventPublisher:
    """Publishes typed events to in-process subscribers as JSON envelopes."""

    def __init__(self, bus: InProcessEventBus) -> None:
        self.bus = bus
        self.published: list[dict[str, Any]] = []

    def publish(self, event: PipelineEvent) -> None:
        envelope = build_envelope(event)
        self.published.append(envelope)
        self.bus.publish(event.event_type, envelope)


def emit_committed(event: PipelineEvent, publisher: Any, scheduler: Any) -> None:
    """Publish an already-committed outbox event and hand it to the delivery scheduler.

    Neither step may fail the caller: the outbox relay picks up anything the
    scheduler did not accept.
    """
    try:
        publisher.publish(event)
    except Exception as exc:
        logger.warning(
            "pipeline.event.publish_failed",
            extra={"event_id": str(event.event_id), "event_type": event.event_type, "error": str(exc)},
        )
    try:
        scheduler.schedule(event.tenant_id, event.event_id)
    except Exception as exc:
        logger.warning(
            "webhook.delivery.schedule_failed",
            extra={"event_id": str(event.event_id), "event_type": event.event_type, "error": str(exc)},
        )
