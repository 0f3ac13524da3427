from __future__ import annotations

import uuid
from typing import Any

from pipeline_engine.context import bound_context
from pipeline_engine.core.celery_app import celery_app
from pipeline_engine.core.database import SessionLocal
from pipeline_engine.crm.factory import build_components


@celery_app.task(name="pipeline_engine.crm.deliver_event")
def deliver_event_task(tenant_id: str, event_id: str) -> dict[str, Any]:
    session = SessionLocal()
    try:
        components = build_components(session)
        event_uuid = uuid.UUID(event_id)
        event = components.store.get_event(tenant_id, event_uuid)
        # Delivery logs and WebhookDelivered/Failed reuse the originating request's correlation id.
        with bound_context(correlation_id=event.correlation_id if event is not None else None, tenant_id=tenant_id):
            report = components.dispatcher.deliver(tenant_id, event_uuid)
        return {
            "event_id": event_id,
            "deliveries": [
                {"endpoint_id": str(item.endpoint_id), "status": item.status, "attempts": item.attempts}
                for item in report.deliveries
            ],
        }
    finally:
        session.close()


@celery_app.task(name="pipeline_engine.crm.sla_sweep")
def sla_sweep_task(tenant_id: str | None = None) -> dict[str, Any]:
    session = SessionLocal()
    try:
        components = build_components(session)
        with bound_context(correlation_id=f"sla-sweep-{uuid.uuid4()}", tenant_id=tenant_id):
            report = components.sla_monitor.sweep(tenant_id=tenant_id)
        return {
            "breached": len(report.breached_clock_ids),
            "escalations": len(report.escalation_ids),
            "skipped": report.skipped,
            "failed": len(report.failed_clock_ids),
            "timers": len(report.fired_timer_ids),
        }
    finally:
        session.close()


@celery_app.task(name="pipeline_engine.crm.relay_outbox")
def relay_outbox_task(tenant_id: str | None = None) -> dict[str, Any]:
    session = SessionLocal()
    try:
        components = build_components(session)
        with bound_context(tenant_id=tenant_id):
            scheduled = components.dispatcher.relay_pending(components.scheduler, tenant_id=tenant_id)
        return {"scheduled": len(scheduled)}
    finally:
        session.close()
