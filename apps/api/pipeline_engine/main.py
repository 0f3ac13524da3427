from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from pipeline_engine.api.routes import router as api_router
from pipeline_engine.core.config import get_settings
from pipeline_engine.core.context import RequestContextMiddleware
from pipeline_engine.core.events import InProcessEventBus, InternalEvent
from pipeline_engine.crm.contracts import StaticOrgLookup, SystemClock
from pipeline_engine.crm.events import ENTITY_CLOSED, ENTITY_ESCALATED, STAGE_TRANSITIONED
from pipeline_engine.crm.webhooks import RequestsHttpSender, WebhookIntegration
from pipeline_engine.logging import configure_logging
from pipeline_engine.middleware.correlation_id import CorrelationIdMiddleware
from pipeline_engine.middleware.request_logging import RequestLoggingMiddleware
from pipeline_engine.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("pipeline_engine.lifecycle")
event_bus = InProcessEventBus()
_subscriptions_registered = False

_pipeline_event_types = [STAGE_TRANSITIONED, ENTITY_ESCALATED, ENTITY_CLOSED]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system.started", extra={"event_type": event.name})


def _on_pipeline_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    logger.info(
        "pipeline.event.published",
        extra={
            "event_type": event.name,
            "event_id": event.payload.get("event_id") if isinstance(event.payload, dict) else None,
            "tenant_id": event.payload.get("tenant_id") if isinstance(event.payload, dict) else None,
            "entity_id": payload.get("entity_id") if isinstance(payload, dict) else None,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _pipeline_event_types:
            event_bus.subscribe(event_name, _on_pipeline_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title="Pipeline Engine API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

app.state.event_bus = event_bus
app.state.clock = SystemClock()
app.state.org_lookup = StaticOrgLookup(settings.org_manager_map)
app.state.http_sender = RequestsHttpSender()
app.state.integrations = {
    "webhook": WebhookIntegration(app.state.http_sender, settings.webhook_timeout_seconds),
}

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
