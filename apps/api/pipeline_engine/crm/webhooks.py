from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from pipeline_engine.core.config import Settings, get_settings
from pipeline_engine.crm.contracts import Clock, EventPublisher, HttpResult, HttpSender
from pipeline_engine.crm.errors import ActionError
from pipeline_engine.crm.events import WebhookDelivered, WebhookFailed
from pipeline_engine.crm.models import CRMPipelineEvent, CRMWebhookDeliveryAttempt, CRMWebhookEndpoint
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.metrics import observe_webhook_attempt, observe_webhook_delivery
from pipeline_engine.otel import get_tracer

logger = logging.getLogger("pipeline_engine.crm.webhooks")
tracer = get_tracer("pipeline_engine.crm.webhooks")

USER_AGENT = "pipeline-engine-webhooks/0.1"


def compute_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before retrying after ``attempt`` failed: ``min(cap, base * 2^(attempt-1))`` with +/- jitter."""
    delay = min(max_delay, base_delay * (2 ** max(attempt - 1, 0)))
    if jitter_ratio <= 0 or delay <= 0:
        return delay
    spread = delay * jitter_ratio
    source = rng or random
    return max(0.0, delay + source.uniform(-spread, spread))


def serialize_outbox_event(event: CRMPipelineEvent) -> dict[str, Any]:
    return {
        "event_id": str(event.id),
        "event_type": event.event_type,
        "occurred_at": event.occurred_at.isoformat(),
        "tenant_id": event.tenant_id,
        "correlation_id": event.correlation_id,
        "version": 1,
        "payload": event.payload,
    }


class RequestsHttpSender:
    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()

    def post(self, url: str, payload: dict[str, Any], timeout: float) -> HttpResult:
        try:
            response = self.session.post(
                url,
                json=payload,
                timeout=timeout,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            )
        except requests.Timeout:
            return HttpResult(status_code=None, error=f"timeout after {timeout}s")
        except requests.RequestException as exc:
            return HttpResult(status_code=None, error=str(exc)[:500])

        if 200 <= response.status_code < 300:
            return HttpResult(status_code=response.status_code)
        return HttpResult(status_code=response.status_code, error=f"HTTP {response.status_code}: {response.text[:200]}")


@dataclass
class EndpointDelivery:
    endpoint_id: uuid.UUID
    url: str
    status: str
    attempts: int
    last_error: str | None = None


@dataclass
class DeliveryReport:
    event_id: uuid.UUID
    deliveries: list[EndpointDelivery] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return any(delivery.status == "cancelled" for delivery in self.deliveries)


class WebhookDispatcher:
    def __init__(
        self,
        store: SqlPipelineStore,
        sender: HttpSender,
        publisher: EventPublisher,
        clock: Clock,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.publisher = publisher
        self.clock = clock
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.rng = rng

    def deliver(self, tenant_id: str, event_id: uuid.UUID) -> DeliveryReport:
        report = DeliveryReport(event_id=event_id)
        with tracer.start_as_current_span("pipeline.webhook.deliver") as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("event_id", str(event_id))

            event = self.store.get_event(tenant_id, event_id)
            if event is None:
                logger.warning("webhook.delivery.event_missing", extra={"tenant_id": tenant_id, "event_id": str(event_id)})
                return report

            body = serialize_outbox_event(event)
            event_type = event.event_type
            endpoints = self.store.subscribed_endpoints(tenant_id, event_type)
            span.set_attribute("endpoints", len(endpoints))
            for endpoint in endpoints:
                delivery = self._deliver_to_endpoint(tenant_id, event_id, event_type, endpoint, body)
                if delivery is not None:
                    report.deliveries.append(delivery)

            if not report.cancelled and not self.store.is_event_superseded(tenant_id, event_id):
                self.store.mark_event_dispatched(tenant_id, event_id, self.clock.now())
            self.store.commit()
        return report

    def relay_pending(self, scheduler: Any, limit: int | None = None, tenant_id: str | None = None) -> list[uuid.UUID]:
        """Reschedule undispatched outbox events (at-least-once)."""
        events = self.store.pending_events(limit or self.settings.outbox_relay_batch_size, tenant_id=tenant_id)
        pending = [(event.tenant_id, event.id) for event in events]
        self.store.rollback()
        scheduled: list[uuid.UUID] = []
        for event_tenant_id, event_id in pending:
            try:
                scheduler.schedule(event_tenant_id, event_id)
            except Exception as exc:
                logger.warning(
                    "webhook.relay.schedule_failed",
                    extra={"tenant_id": event_tenant_id, "event_id": str(event_id), "error": str(exc)},
                )
                continue
            scheduled.append(event_id)
        if scheduled:
            logger.info("webhook.relay.scheduled", extra={"tenant_id": tenant_id, "status": str(len(scheduled))})
        return scheduled

    def _deliver_to_endpoint(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        event_type: str,
        endpoint: CRMWebhookEndpoint,
        body: dict[str, Any],
    ) -> EndpointDelivery | None:
        endpoint_id = endpoint.id
        url = endpoint.url
        max_attempts = endpoint.max_attempts or self.settings.webhook_max_attempts
        timeout = endpoint.timeout_seconds or self.settings.webhook_timeout_seconds

        previous = self.store.list_attempts(tenant_id, event_id, endpoint_id)
        if any(attempt.outcome in ("delivered", "failed") for attempt in previous):
            return None
        attempt_number = len(previous)
        last_error: str | None = None

        while attempt_number < max_attempts:
            if self.store.is_event_superseded(tenant_id, event_id):
                self.store.rollback()
                logger.info(
                    "webhook.delivery.cancelled",
                    extra={
                        "tenant_id": tenant_id,
                        "event_id": str(event_id),
                        "endpoint_id": str(endpoint_id),
                        "attempt": attempt_number,
                    },
                )
                observe_webhook_delivery("cancelled")
                return EndpointDelivery(endpoint_id, url, "cancelled", attempt_number, last_error)

            attempt_number += 1
            try:
                result = self.sender.post(url, body, timeout)
            except Exception as exc:
                result = HttpResult(status_code=None, error=str(exc)[:500])

            final = attempt_number >= max_attempts
            if result.ok:
                outcome = "delivered"
            else:
                outcome = "failed" if final else "pending"
                last_error = result.error or f"HTTP {result.status_code}"

            self.store.add_attempt(
                CRMWebhookDeliveryAttempt(
                    id=uuid.uuid4(),
                    tenant_id=tenant_id,
                    event_id=event_id,
                    endpoint_id=endpoint_id,
                    url=url,
                    payload=body,
                    attempt_number=attempt_number,
                    outcome=outcome,
                    status_code=result.status_code,
                    error=None if result.ok else last_error,
                    attempted_at=self.clock.now(),
                )
            )
            self.store.commit()
            observe_webhook_attempt(outcome)

            if result.ok:
                observe_webhook_delivery("delivered")
                logger.info(
                    "webhook.delivery.delivered",
                    extra={
                        "tenant_id": tenant_id,
                        "event_id": str(event_id),
                        "event_type": event_type,
                        "endpoint_id": str(endpoint_id),
                        "attempt": attempt_number,
                        "status_code": result.status_code,
                    },
                )
                self._publish(
                    WebhookDelivered(
                        tenant_id=tenant_id,
                        occurred_at=self.clock.now(),
                        delivered_event_id=event_id,
                        endpoint_id=endpoint_id,
                        url=url,
                        attempts=attempt_number,
                    )
                )
                return EndpointDelivery(endpoint_id, url, "delivered", attempt_number)

            if final:
                break

            delay = compute_backoff(
                attempt_number,
                self.settings.webhook_base_delay_seconds,
                self.settings.webhook_max_delay_seconds,
                self.settings.webhook_jitter_ratio,
                self.rng,
            )
            logger.info(
                "webhook.delivery.retry_scheduled",
                extra={
                    "tenant_id": tenant_id,
                    "event_id": str(event_id),
                    "endpoint_id": str(endpoint_id),
                    "attempt": attempt_number,
                    "error": last_error,
                    "duration_ms": round(delay * 1000, 2),
                },
            )
            self.sleep(delay)

        observe_webhook_delivery("failed")
        logger.warning(
            "webhook.delivery.failed",
            extra={
                "tenant_id": tenant_id,
                "event_id": str(event_id),
                "event_type": event_type,
                "endpoint_id": str(endpoint_id),
                "attempt": attempt_number,
                "error": last_error,
            },
        )
        self._publish(
            WebhookFailed(
                tenant_id=tenant_id,
                occurred_at=self.clock.now(),
                delivered_event_id=event_id,
                endpoint_id=endpoint_id,
                url=url,
                attempts=attempt_number,
                error=last_error,
            )
        )
        return EndpointDelivery(endpoint_id, url, "failed", attempt_number, last_error)

    def _publish(self, event: WebhookDelivered | WebhookFailed) -> None:
        try:
            self.publisher.publish(event)
        except Exception as exc:
            logger.warning(
                "pipeline.event.publish_failed",
                extra={"event_id": str(event.event_id), "event_type": event.event_type, "error": str(exc)},
            )


class OutboxOnlyScheduler:
    """Leaves events in the outbox for the periodic relay."""

    def schedule(self, tenant_id: str, event_id: uuid.UUID) -> None:
        logger.debug("webhook.delivery.deferred_to_relay", extra={"tenant_id": tenant_id, "event_id": str(event_id)})


class CeleryDeliveryScheduler:
    def schedule(self, tenant_id: str, event_id: uuid.UUID) -> None:
        from pipeline_engine.crm.tasks import deliver_event_task

        deliver_event_task.delay(tenant_id, str(event_id))


class WebhookIntegration:
    """Integration handle that POSTs the entity snapshot to a configured URL.

    ``config`` carries ``url`` and optionally ``compensate_url`` and
    ``timeout_seconds``. A non-2xx answer fails the action.
    """

    def __init__(self, sender: HttpSender, default_timeout: float | None = None) -> None:
        self.sender = sender
        self.default_timeout = default_timeout

    def execute(self, tenant_id: str, entity: Mapping[str, Any], config: Mapping[str, Any]) -> Any:
        url = config.get("url")
        if not url:
            raise ActionError("EXECUTE_INTEGRATION", "webhook integration requires a url")
        result = self.sender.post(
            str(url),
            {"tenant_id": tenant_id, "entity": dict(entity), "config": dict(config.get("payload") or {})},
            self._timeout(config),
        )
        if not result.ok:
            raise ActionError("EXECUTE_INTEGRATION", result.error or f"HTTP {result.status_code}")
        return {"status_code": result.status_code}

    def compensate(
        self,
        tenant_id: str,
        entity: Mapping[str, Any],
        config: Mapping[str, Any],
        result: Any,
    ) -> None:
        url = config.get("compensate_url")
        if not url:
            return
        outcome = self.sender.post(
            str(url),
            {"tenant_id": tenant_id, "entity": dict(entity), "action": "compensate", "result": result},
            self._timeout(config),
        )
        if not outcome.ok:
            raise ActionError("EXECUTE_INTEGRATION", outcome.error or f"HTTP {outcome.status_code}")

    def _timeout(self, config: Mapping[str, Any]) -> float:
        raw = config.get("timeout_seconds")
        if isinstance(raw, (int, float)) and raw > 0:
            return float(raw)
        return self.default_timeout or get_settings().webhook_timeout_seconds
