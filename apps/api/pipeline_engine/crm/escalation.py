from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from pipeline_engine import audit
from pipeline_engine.crm.assignment import AssignmentContext, AssignmentResolver
from pipeline_engine.crm.contracts import Clock, DeliveryScheduler, EventPublisher, Notification, NotificationSender
from pipeline_engine.crm.errors import ConfigurationError, PipelineError
from pipeline_engine.crm.events import EntityEscalated, emit_committed
from pipeline_engine.crm.models import CRMEntity, CRMEscalation, CRMSlaClock
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.crm.schemas import parse_escalation_strategy
from pipeline_engine.metrics import observe_escalation
from pipeline_engine.otel import get_tracer

logger = logging.getLogger("pipeline_engine.crm.escalation")
tracer = get_tracer("pipeline_engine.crm.escalation")

UNRESOLVED_SUFFIX = "unresolved_target"
ESCALATION_NOTIFICATION = "crm.entity.escalated"


class EscalationManager:
    def __init__(
        self,
        store: SqlPipelineStore,
        resolver: AssignmentResolver,
        clock: Clock,
        publisher: EventPublisher,
        scheduler: DeliveryScheduler,
        notifier: NotificationSender,
        max_level_attempts: int = 3,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.clock = clock
        self.publisher = publisher
        self.scheduler = scheduler
        self.notifier = notifier
        self.max_level_attempts = max_level_attempts

    def escalate(
        self,
        tenant_id: str,
        entity: CRMEntity,
        reason: str,
        clock: CRMSlaClock | None = None,
    ) -> CRMEscalation:
        """Append the next escalation level for ``entity`` and commit it.

        Staged changes already in the session (a breach CAS, a fired timer)
        commit together with the escalation row and its outbox event.
        """
        with tracer.start_as_current_span("pipeline.escalate") as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("entity_id", str(entity.id))
            span.set_attribute("reason", reason)

            to_owner_id = self._resolve_target(tenant_id, entity)
            recorded_reason = reason if to_owner_id else f"{reason}:{UNRESOLVED_SUFFIX}"
            now = self.clock.now()

            escalation = self._append(tenant_id, entity, clock, to_owner_id, recorded_reason, now)
            event = EntityEscalated(
                tenant_id=tenant_id,
                occurred_at=now,
                entity_id=entity.id,
                escalation_id=escalation.id,
                level=escalation.level,
                from_owner_id=escalation.from_owner_id,
                to_owner_id=to_owner_id,
                reason=recorded_reason,
                clock_id=clock.id if clock is not None else None,
            )
            self.store.add_event(entity.id, event)
            self.store.commit()
            span.set_attribute("level", escalation.level)

        observe_escalation(resolved=to_owner_id is not None)
        audit.record(
            actor_id="system",
            tenant_id=tenant_id,
            entity_type="crm.entity",
            entity_id=str(entity.id),
            action="entity.escalated",
            before=None,
            after={"level": escalation.level, "to_owner_id": to_owner_id, "reason": recorded_reason},
        )
        logger.warning(
            "pipeline.entity.escalated",
            extra={
                "tenant_id": tenant_id,
                "entity_id": str(entity.id),
                "clock_id": str(clock.id) if clock is not None else None,
                "level": escalation.level,
                "reason": recorded_reason,
            },
        )
        emit_committed(event, self.publisher, self.scheduler)

        if to_owner_id is not None:
            try:
                self.notifier.send(
                    Notification(
                        tenant_id=tenant_id,
                        entity_id=entity.id,
                        notification_type=ESCALATION_NOTIFICATION,
                        recipient_id=to_owner_id,
                        payload={
                            "escalation_id": str(escalation.id),
                            "level": escalation.level,
                            "reason": recorded_reason,
                            "from_owner_id": escalation.from_owner_id,
                        },
                    )
                )
            except Exception as exc:
                logger.warning(
                    "pipeline.escalation.notify_failed",
                    extra={"tenant_id": tenant_id, "entity_id": str(entity.id), "error": str(exc)},
                )
        return escalation

    def _resolve_target(self, tenant_id: str, entity: CRMEntity) -> str | None:
        stage = self.store.load_stage(tenant_id, entity.current_stage_id)
        try:
            strategy = parse_escalation_strategy(stage.escalation_strategy if stage is not None else None)
            return self.resolver.resolve(
                strategy.strategy,
                strategy.candidates,
                AssignmentContext(
                    tenant_id=tenant_id,
                    pipeline_id=entity.pipeline_id,
                    stage_id=entity.current_stage_id,
                    owner_id=entity.owner_id,
                ),
                owner_id=strategy.owner_id,
            )
        except ConfigurationError as exc:
            logger.warning(
                "pipeline.escalation.target_unresolved",
                extra={"tenant_id": tenant_id, "entity_id": str(entity.id), "error": exc.message},
            )
            return None

    def _append(
        self,
        tenant_id: str,
        entity: CRMEntity,
        clock: CRMSlaClock | None,
        to_owner_id: str | None,
        reason: str,
        now: datetime,
    ) -> CRMEscalation:
        for attempt in range(1, self.max_level_attempts + 1):
            level = self.store.max_escalation_level(tenant_id, entity.id) + 1
            escalation = CRMEscalation(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                entity_id=entity.id,
                clock_id=clock.id if clock is not None else None,
                level=level,
                from_owner_id=entity.owner_id,
                to_owner_id=to_owner_id,
                reason=reason,
                escalated_at=now,
            )
            try:
                with self.store.savepoint():
                    self.store.add_escalation(escalation)
                return escalation
            except IntegrityError:
                logger.info(
                    "pipeline.escalation.level_conflict",
                    extra={"tenant_id": tenant_id, "entity_id": str(entity.id), "level": level, "attempt": attempt},
                )
        raise PipelineError(
            "could not allocate an escalation level",
            details={"entity_id": str(entity.id), "attempts": self.max_level_attempts},
        )
