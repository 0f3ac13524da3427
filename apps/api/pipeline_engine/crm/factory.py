from __future__ import annotations

import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from sqlalchemy.orm import Session

from pipeline_engine.core.config import Settings, get_settings
from pipeline_engine.core.events import InProcessEventBus
from pipeline_engine.crm.actions import ActionExecutor
from pipeline_engine.crm.assignment import AssignmentResolver, CursorStore, SqlCursorStore
from pipeline_engine.crm.contracts import (
    Clock,
    DeliveryScheduler,
    EventPublisher,
    HttpSender,
    Integration,
    NotificationSender,
    OrgLookup,
    StaticOrgLookup,
    SystemClock,
)
from pipeline_engine.crm.errors import ConfigurationError
from pipeline_engine.crm.escalation import EscalationManager
from pipeline_engine.crm.events import BusEventPublisher
from pipeline_engine.crm.engine import PipelineEngine
from pipeline_engine.crm.notifications import IntentNotificationSender
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.crm.sla import SlaMonitor
from pipeline_engine.crm.webhooks import (
    CeleryDeliveryScheduler,
    OutboxOnlyScheduler,
    RequestsHttpSender,
    WebhookDispatcher,
    WebhookIntegration,
)

DELIVERY_MODES = ("celery", "outbox")


@dataclass
class PipelineComponents:
    store: SqlPipelineStore
    resolver: AssignmentResolver
    executor: ActionExecutor
    engine: PipelineEngine
    escalations: EscalationManager
    sla_monitor: SlaMonitor
    dispatcher: WebhookDispatcher
    publisher: EventPublisher
    scheduler: DeliveryScheduler


def build_scheduler(mode: str) -> DeliveryScheduler:
    if mode == "celery":
        return CeleryDeliveryScheduler()
    if mode == "outbox":
        return OutboxOnlyScheduler()
    raise ConfigurationError(f"unknown webhook delivery mode: {mode}", details={"allowed": list(DELIVERY_MODES)})


def build_components(
    session: Session,
    *,
    clock: Clock | None = None,
    org_lookup: OrgLookup | None = None,
    http_sender: HttpSender | None = None,
    integrations: Mapping[str, Integration] | None = None,
    notifier: NotificationSender | None = None,
    publisher: EventPublisher | None = None,
    scheduler: DeliveryScheduler | None = None,
    cursor_store: CursorStore | None = None,
    settings: Settings | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> PipelineComponents:
    """Wire the engine, escalation, SLA and webhook services around one session."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    store = SqlPipelineStore(session)
    http_sender = http_sender or RequestsHttpSender()
    publisher = publisher or BusEventPublisher(InProcessEventBus())
    notifier = notifier or IntentNotificationSender(store)
    org_lookup = org_lookup or StaticOrgLookup(settings.org_manager_map)
    if integrations is None:
        integrations = {"webhook": WebhookIntegration(http_sender, settings.webhook_timeout_seconds)}

    resolver = AssignmentResolver(
        cursor_store or SqlCursorStore(session),
        store.count_owned_active,
        org_lookup,
    )
    dispatcher = WebhookDispatcher(store, http_sender, publisher, clock, settings=settings, sleep=sleep, rng=rng)
    scheduler = scheduler or build_scheduler(settings.webhook_delivery_mode)

    executor = ActionExecutor(store, resolver, clock, notifier, integrations)
    engine = PipelineEngine(store, executor, clock, publisher, scheduler, settings=settings)
    escalations = EscalationManager(store, resolver, clock, publisher, scheduler, notifier)
    sla_monitor = SlaMonitor(store, escalations, clock, notifier, engine=engine, settings=settings)

    return PipelineComponents(
        store=store,
        resolver=resolver,
        executor=executor,
        engine=engine,
        escalations=escalations,
        sla_monitor=sla_monitor,
        dispatcher=dispatcher,
        publisher=publisher,
        scheduler=scheduler,
    )
