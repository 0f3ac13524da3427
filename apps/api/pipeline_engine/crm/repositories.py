from __future__ import annotations

import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from pipeline_engine.context import get_correlation_id
from pipeline_engine.crm.events import PipelineEvent
from pipeline_engine.crm.models import (
    CRMEntity,
    CRMEntityDefinition,
    CRMEscalation,
    CRMNotificationIntent,
    CRMPipeline,
    CRMPipelineEvent,
    CRMPipelineStage,
    CRMSlaClock,
    CRMStageTimer,
    CRMStageTransition,
    CRMWebhookDeliveryAttempt,
    CRMWebhookEndpoint,
)


class SqlPipelineStore:
    """SQLAlchemy-backed store for pipeline state.

    Every read and write is scoped by an explicit ``tenant_id``. The only
    cross-tenant reads are the background sweeps (``due_clocks``,
    ``due_timers``, ``pending_events``), which accept an optional tenant filter.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with self.session.begin_nested():
            yield

    def get_pipeline(self, tenant_id: str, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return self.session.scalar(
            select(CRMPipeline).where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.tenant_id == tenant_id))
        )

    def get_definition(self, tenant_id: str, definition_id: uuid.UUID) -> CRMEntityDefinition | None:
        return self.session.scalar(
            select(CRMEntityDefinition).where(
                and_(CRMEntityDefinition.id == definition_id, CRMEntityDefinition.tenant_id == tenant_id)
            )
        )

    def load_entity(self, tenant_id: str, entity_id: uuid.UUID, for_update: bool = False) -> CRMEntity | None:
        stmt = select(CRMEntity).where(and_(CRMEntity.id == entity_id, CRMEntity.tenant_id == tenant_id))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.scalar(stmt)

    def add_entity(self, entity: CRMEntity) -> None:
        self.session.add(entity)
        self.session.flush()

    def save_entity(self, entity: CRMEntity) -> None:
        entity.row_version = (entity.row_version or 0) + 1
        self.session.flush()

    def load_stage(self, tenant_id: str, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return self.session.scalar(
            select(CRMPipelineStage)
            .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
            .where(and_(CRMPipelineStage.id == stage_id, CRMPipeline.tenant_id == tenant_id))
        )

    def list_stages(self, tenant_id: str, pipeline_id: uuid.UUID) -> list[CRMPipelineStage]:
        return list(
            self.session.scalars(
                select(CRMPipelineStage)
                .join(CRMPipeline, CRMPipeline.id == CRMPipelineStage.pipeline_id)
                .where(and_(CRMPipelineStage.pipeline_id == pipeline_id, CRMPipeline.tenant_id == tenant_id))
                .order_by(CRMPipelineStage.position.asc())
            )
        )

    def get_transition_rule(
        self,
        tenant_id: str,
        pipeline_id: uuid.UUID,
        from_stage_id: uuid.UUID,
        to_stage_id: uuid.UUID,
    ) -> CRMStageTransition | None:
        return self.session.scalar(
            select(CRMStageTransition)
            .join(CRMPipeline, CRMPipeline.id == CRMStageTransition.pipeline_id)
            .where(
                and_(
                    CRMStageTransition.pipeline_id == pipeline_id,
                    CRMStageTransition.from_stage_id == from_stage_id,
                    CRMStageTransition.to_stage_id == to_stage_id,
                    CRMPipeline.tenant_id == tenant_id,
                )
            )
        )

    def list_transition_rules(
        self,
        tenant_id: str,
        pipeline_id: uuid.UUID,
        from_stage_id: uuid.UUID,
    ) -> list[CRMStageTransition]:
        return list(
            self.session.scalars(
                select(CRMStageTransition)
                .join(CRMPipeline, CRMPipeline.id == CRMStageTransition.pipeline_id)
                .where(
                    and_(
                        CRMStageTransition.pipeline_id == pipeline_id,
                        CRMStageTransition.from_stage_id == from_stage_id,
                        CRMPipeline.tenant_id == tenant_id,
                    )
                )
            )
        )

    def count_owned_active(self, tenant_id: str, owner_ids: Sequence[str]) -> dict[str, int]:
        if not owner_ids:
            return {}
        rows = self.session.execute(
            select(CRMEntity.owner_id, func.count(CRMEntity.id))
            .where(
                and_(
                    CRMEntity.tenant_id == tenant_id,
                    CRMEntity.status == "active",
                    CRMEntity.owner_id.in_(list(owner_ids)),
                )
            )
            .group_by(CRMEntity.owner_id)
        ).all()
        return {str(owner_id): int(count) for owner_id, count in rows}

    def get_active_clock(self, tenant_id: str, entity_id: uuid.UUID) -> CRMSlaClock | None:
        return self.session.scalar(
            select(CRMSlaClock).where(
                and_(
                    CRMSlaClock.tenant_id == tenant_id,
                    CRMSlaClock.entity_id == entity_id,
                    CRMSlaClock.status == "active",
                )
            )
        )

    def get_clock(self, tenant_id: str, clock_id: uuid.UUID) -> CRMSlaClock | None:
        return self.session.scalar(
            select(CRMSlaClock).where(and_(CRMSlaClock.id == clock_id, CRMSlaClock.tenant_id == tenant_id))
        )

    def list_clocks(self, tenant_id: str, entity_id: uuid.UUID) -> list[CRMSlaClock]:
        return list(
            self.session.scalars(
                select(CRMSlaClock)
                .where(and_(CRMSlaClock.tenant_id == tenant_id, CRMSlaClock.entity_id == entity_id))
                .order_by(CRMSlaClock.started_at.asc())
            )
        )

    def add_clock(self, clock: CRMSlaClock) -> None:
        self.session.add(clock)
        self.session.flush()

    def resolve_clock(self, tenant_id: str, clock_id: uuid.UUID, now: datetime) -> bool:
        return self._swap_clock_status(tenant_id, clock_id, "resolved", resolved_at=now)

    def breach_clock(self, tenant_id: str, clock_id: uuid.UUID, now: datetime) -> bool:
        return self._swap_clock_status(tenant_id, clock_id, "breached", breached_at=now)

    def _swap_clock_status(self, tenant_id: str, clock_id: uuid.UUID, status: str, **values: datetime) -> bool:
        result = self.session.execute(
            update(CRMSlaClock)
            .where(
                and_(
                    CRMSlaClock.id == clock_id,
                    CRMSlaClock.tenant_id == tenant_id,
                    CRMSlaClock.status == "active",
                )
            )
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def due_clocks(self, now: datetime, limit: int, tenant_id: str | None = None) -> list[CRMSlaClock]:
        stmt = select(CRMSlaClock).where(and_(CRMSlaClock.status == "active", CRMSlaClock.breach_at <= now))
        if tenant_id is not None:
            stmt = stmt.where(CRMSlaClock.tenant_id == tenant_id)
        stmt = stmt.order_by(CRMSlaClock.breach_at.asc(), CRMSlaClock.id.asc()).limit(limit)
        return list(self.session.scalars(stmt))

    def max_escalation_level(self, tenant_id: str, entity_id: uuid.UUID) -> int:
        value = self.session.scalar(
            select(func.max(CRMEscalation.level)).where(
                and_(CRMEscalation.tenant_id == tenant_id, CRMEscalation.entity_id == entity_id)
            )
        )
        return int(value or 0)

    def add_escalation(self, escalation: CRMEscalation) -> None:
        self.session.add(escalation)
        self.session.flush()

    def list_escalations(self, tenant_id: str, entity_id: uuid.UUID) -> list[CRMEscalation]:
        return list(
            self.session.scalars(
                select(CRMEscalation)
                .where(and_(CRMEscalation.tenant_id == tenant_id, CRMEscalation.entity_id == entity_id))
                .order_by(CRMEscalation.level.asc())
            )
        )

    def add_timer(self, timer: CRMStageTimer) -> None:
        self.session.add(timer)
        self.session.flush()

    def list_timers(self, tenant_id: str, entity_id: uuid.UUID) -> list[CRMStageTimer]:
        return list(
            self.session.scalars(
                select(CRMStageTimer)
                .where(and_(CRMStageTimer.tenant_id == tenant_id, CRMStageTimer.entity_id == entity_id))
                .order_by(CRMStageTimer.scheduled_at.asc())
            )
        )

    def due_timers(self, now: datetime, limit: int, tenant_id: str | None = None) -> list[CRMStageTimer]:
        stmt = select(CRMStageTimer).where(
            and_(CRMStageTimer.status == "scheduled", CRMStageTimer.scheduled_at <= now)
        )
        if tenant_id is not None:
            stmt = stmt.where(CRMStageTimer.tenant_id == tenant_id)
        stmt = stmt.order_by(CRMStageTimer.scheduled_at.asc(), CRMStageTimer.id.asc()).limit(limit)
        return list(self.session.scalars(stmt))

    def mark_timer_fired(self, tenant_id: str, timer_id: uuid.UUID, now: datetime) -> bool:
        result = self.session.execute(
            update(CRMStageTimer)
            .where(
                and_(
                    CRMStageTimer.id == timer_id,
                    CRMStageTimer.tenant_id == tenant_id,
                    CRMStageTimer.status == "scheduled",
                )
            )
            .values(status="fired", fired_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def cancel_timers(self, tenant_id: str, entity_id: uuid.UUID) -> int:
        result = self.session.execute(
            update(CRMStageTimer)
            .where(
                and_(
                    CRMStageTimer.tenant_id == tenant_id,
                    CRMStageTimer.entity_id == entity_id,
                    CRMStageTimer.status == "scheduled",
                )
            )
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def add_event(self, entity_id: uuid.UUID, event: PipelineEvent) -> CRMPipelineEvent:
        row = CRMPipelineEvent(
            id=event.event_id,
            tenant_id=event.tenant_id,
            entity_id=entity_id,
            event_type=event.event_type,
            payload=event.to_payload(),
            correlation_id=get_correlation_id(),
            occurred_at=event.occurred_at,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def get_event(self, tenant_id: str, event_id: uuid.UUID) -> CRMPipelineEvent | None:
        return self.session.scalar(
            select(CRMPipelineEvent).where(
                and_(CRMPipelineEvent.id == event_id, CRMPipelineEvent.tenant_id == tenant_id)
            )
        )

    def is_event_superseded(self, tenant_id: str, event_id: uuid.UUID) -> bool:
        superseded_at = self.session.scalar(
            select(CRMPipelineEvent.superseded_at).where(
                and_(CRMPipelineEvent.id == event_id, CRMPipelineEvent.tenant_id == tenant_id)
            )
        )
        return superseded_at is not None

    def supersede_events(self, tenant_id: str, entity_id: uuid.UUID, now: datetime) -> int:
        result = self.session.execute(
            update(CRMPipelineEvent)
            .where(
                and_(
                    CRMPipelineEvent.tenant_id == tenant_id,
                    CRMPipelineEvent.entity_id == entity_id,
                    CRMPipelineEvent.dispatched_at.is_(None),
                    CRMPipelineEvent.superseded_at.is_(None),
                )
            )
            .values(superseded_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def mark_event_dispatched(self, tenant_id: str, event_id: uuid.UUID, now: datetime) -> None:
        self.session.execute(
            update(CRMPipelineEvent)
            .where(
                and_(
                    CRMPipelineEvent.id == event_id,
                    CRMPipelineEvent.tenant_id == tenant_id,
                    CRMPipelineEvent.dispatched_at.is_(None),
                )
            )
            .values(dispatched_at=now)
            .execution_options(synchronize_session=False)
        )

    def pending_events(self, limit: int, tenant_id: str | None = None) -> list[CRMPipelineEvent]:
        stmt = select(CRMPipelineEvent).where(
            and_(CRMPipelineEvent.dispatched_at.is_(None), CRMPipelineEvent.superseded_at.is_(None))
        )
        if tenant_id is not None:
            stmt = stmt.where(CRMPipelineEvent.tenant_id == tenant_id)
        stmt = stmt.order_by(CRMPipelineEvent.occurred_at.asc(), CRMPipelineEvent.id.asc()).limit(limit)
        return list(self.session.scalars(stmt))

    def subscribed_endpoints(self, tenant_id: str, event_type: str) -> list[CRMWebhookEndpoint]:
        endpoints = self.session.scalars(
            select(CRMWebhookEndpoint)
            .where(and_(CRMWebhookEndpoint.tenant_id == tenant_id, CRMWebhookEndpoint.is_active.is_(True)))
            .order_by(CRMWebhookEndpoint.created_at.asc(), CRMWebhookEndpoint.id.asc())
        )
        return [
            endpoint
            for endpoint in endpoints
            if "*" in (endpoint.event_types or []) or event_type in (endpoint.event_types or [])
        ]

    def add_attempt(self, attempt: CRMWebhookDeliveryAttempt) -> None:
        self.session.add(attempt)
        self.session.flush()

    def list_attempts(
        self,
        tenant_id: str,
        event_id: uuid.UUID,
        endpoint_id: uuid.UUID | None = None,
    ) -> list[CRMWebhookDeliveryAttempt]:
        stmt = select(CRMWebhookDeliveryAttempt).where(
            and_(CRMWebhookDeliveryAttempt.tenant_id == tenant_id, CRMWebhookDeliveryAttempt.event_id == event_id)
        )
        if endpoint_id is not None:
            stmt = stmt.where(CRMWebhookDeliveryAttempt.endpoint_id == endpoint_id)
        stmt = stmt.order_by(CRMWebhookDeliveryAttempt.endpoint_id.asc(), CRMWebhookDeliveryAttempt.attempt_number.asc())
        return list(self.session.scalars(stmt))

    def add_notification_intent(self, intent: CRMNotificationIntent) -> None:
        self.session.add(intent)
        self.session.flush()
