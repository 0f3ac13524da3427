from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pipeline_engine.core.config import Settings, get_settings
from pipeline_engine.crm.contracts import Clock, Notification, NotificationSender, SupportsTimerProcessing
from pipeline_engine.crm.engine import PipelineEngine
from pipeline_engine.crm.escalation import EscalationManager
from pipeline_engine.crm.models import CRMSlaClock, CRMStageTimer
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.metrics import observe_sla_breach, observe_sla_sweep, observe_sla_sweep_failure
from pipeline_engine.otel import get_tracer

logger = logging.getLogger("pipeline_engine.crm.sla")
tracer = get_tracer("pipeline_engine.crm.sla")

SLA_BREACH_REASON = "sla_breach"
REPEAT_TIMER_NAME = "sla_breach_repeat"


@dataclass
class SweepReport:
    breached_clock_ids: list[uuid.UUID] = field(default_factory=list)
    escalation_ids: list[uuid.UUID] = field(default_factory=list)
    skipped: int = 0
    failed_clock_ids: list[uuid.UUID] = field(default_factory=list)
    fired_timer_ids: list[uuid.UUID] = field(default_factory=list)


class SlaMonitor:
    def __init__(
        self,
        store: SqlPipelineStore,
        escalation_manager: EscalationManager,
        clock: Clock,
        notifier: NotificationSender,
        engine: PipelineEngine | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.escalation_manager = escalation_manager
        self.clock = clock
        self.notifier = notifier
        self.engine = engine
        self.settings = settings or get_settings()

    def sweep(self, now: datetime | None = None, tenant_id: str | None = None) -> SweepReport:
        now = now or self.clock.now()
        report = SweepReport()
        started = time.perf_counter()
        with tracer.start_as_current_span("pipeline.sla.sweep") as span:
            if tenant_id is not None:
                span.set_attribute("tenant_id", tenant_id)

            due = self.store.due_clocks(now, self.settings.sla_sweep_batch_size, tenant_id=tenant_id)
            self.store.rollback()
            for clock in due:
                self._process_clock(clock, now, report)

            if isinstance(self.store, SupportsTimerProcessing):
                timers = self.store.due_timers(now, self.settings.sla_sweep_batch_size, tenant_id=tenant_id)
                self.store.rollback()
                for timer in timers:
                    self._process_timer(timer, now, report)

            span.set_attribute("breached", len(report.breached_clock_ids))
            span.set_attribute("failed", len(report.failed_clock_ids))

        observe_sla_sweep(time.perf_counter() - started)
        logger.info(
            "sla.sweep.completed",
            extra={
                "tenant_id": tenant_id,
                "status": f"breached={len(report.breached_clock_ids)} skipped={report.skipped} "
                f"failed={len(report.failed_clock_ids)} timers={len(report.fired_timer_ids)}",
            },
        )
        return report

    def _process_clock(self, clock: CRMSlaClock, now: datetime, report: SweepReport) -> None:
        tenant_id = clock.tenant_id
        clock_id = clock.id
        try:
            # Entity row before clock row, the same order transitions take them.
            entity = self.store.load_entity(tenant_id, clock.entity_id, for_update=True)
            if not self.store.breach_clock(tenant_id, clock_id, now):
                self.store.rollback()
                report.skipped += 1
                return

            if entity is None:
                self.store.commit()
                report.breached_clock_ids.append(clock_id)
                observe_sla_breach()
                return

            stage = self.store.load_stage(tenant_id, clock.stage_id)
            if stage is not None and stage.escalation_repeat_minutes:
                self._schedule_repeat(tenant_id, entity.id, stage.id, stage.escalation_repeat_minutes, now)

            escalation = self.escalation_manager.escalate(tenant_id, entity, SLA_BREACH_REASON, clock=clock)
        except Exception as exc:
            self.store.rollback()
            report.failed_clock_ids.append(clock_id)
            observe_sla_sweep_failure("clock")
            logger.exception(
                "sla.sweep.clock_failed",
                extra={"tenant_id": tenant_id, "clock_id": str(clock_id), "error": str(exc)},
            )
            return

        report.breached_clock_ids.append(clock_id)
        report.escalation_ids.append(escalation.id)
        observe_sla_breach()
        logger.warning(
            "sla.clock.breached",
            extra={
                "tenant_id": tenant_id,
                "clock_id": str(clock_id),
                "entity_id": str(entity.id),
                "level": escalation.level,
            },
        )

    def _schedule_repeat(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        stage_id: uuid.UUID,
        repeat_minutes: int,
        now: datetime,
    ) -> None:
        self.store.add_timer(
            CRMStageTimer(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                entity_id=entity_id,
                stage_id=stage_id,
                name=REPEAT_TIMER_NAME,
                timer_type="escalation",
                scheduled_at=now + timedelta(minutes=repeat_minutes),
                action_config={"repeat_minutes": repeat_minutes},
                status="scheduled",
            )
        )

    def _process_timer(self, timer: CRMStageTimer, now: datetime, report: SweepReport) -> None:
        tenant_id = timer.tenant_id
        timer_id = timer.id
        timer_type = timer.timer_type
        timer_name = timer.name
        stage_id = timer.stage_id
        entity_id = timer.entity_id
        action_config = dict(timer.action_config or {})
        try:
            if not self.store.mark_timer_fired(tenant_id, timer_id, now):
                self.store.rollback()
                return

            entity = self.store.load_entity(tenant_id, entity_id, for_update=True)
            in_stage = (
                entity is not None
                and entity.status == "active"
                and entity.current_stage_id == stage_id
            )

            if timer_type == "escalation" and in_stage:
                level = self.store.max_escalation_level(tenant_id, entity_id)
                if level >= self.settings.escalation_max_level:
                    self.store.commit()
                    logger.info(
                        "sla.timer.escalation_capped",
                        extra={"tenant_id": tenant_id, "timer_id": str(timer_id), "level": level},
                    )
                else:
                    repeat_minutes = action_config.get("repeat_minutes")
                    if isinstance(repeat_minutes, int) and repeat_minutes > 0 and level + 1 < self.settings.escalation_max_level:
                        self._schedule_repeat(tenant_id, entity_id, stage_id, repeat_minutes, now)
                    escalation = self.escalation_manager.escalate(tenant_id, entity, f"timer:{timer_name}")
                    report.escalation_ids.append(escalation.id)
            else:
                self.store.commit()

            if timer_type == "reminder" and in_stage:
                self._send_reminder(tenant_id, entity_id, timer_name, action_config, entity.owner_id)
            if timer_type == "stage_timeout" and in_stage:
                self._run_stage_timeout(tenant_id, entity_id, timer_name, action_config)
        except Exception as exc:
            self.store.rollback()
            observe_sla_sweep_failure("timer")
            logger.exception(
                "sla.sweep.timer_failed",
                extra={"tenant_id": tenant_id, "timer_id": str(timer_id), "error": str(exc)},
            )
            return

        report.fired_timer_ids.append(timer_id)
        logger.info(
            "sla.timer.fired",
            extra={
                "tenant_id": tenant_id,
                "timer_id": str(timer_id),
                "entity_id": str(entity_id),
                "status": timer_type,
                "outcome": "applied" if in_stage else "stale",
            },
        )

    def _send_reminder(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        timer_name: str,
        action_config: dict,
        owner_id: str | None,
    ) -> None:
        recipient = action_config.get("recipient_id") or owner_id
        try:
            self.notifier.send(
                Notification(
                    tenant_id=tenant_id,
                    entity_id=entity_id,
                    notification_type=str(action_config.get("notification_type") or "crm.entity.reminder"),
                    recipient_id=str(recipient) if recipient else None,
                    payload={"timer": timer_name, **(action_config.get("payload") or {})},
                )
            )
        except Exception as exc:
            logger.warning(
                "sla.timer.reminder_failed",
                extra={"tenant_id": tenant_id, "entity_id": str(entity_id), "error": str(exc)},
            )

    def _run_stage_timeout(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        timer_name: str,
        action_config: dict,
    ) -> None:
        target_raw = action_config.get("target_stage_id")
        if not target_raw or self.engine is None:
            logger.info(
                "sla.timer.stage_timeout_unhandled",
                extra={"tenant_id": tenant_id, "entity_id": str(entity_id), "reason": timer_name},
            )
            return
        result = self.engine.transition(
            tenant_id,
            entity_id,
            uuid.UUID(str(target_raw)),
            {"trigger": "timer", "timer": timer_name},
        )
        if not result.ok:
            logger.info(
                "sla.timer.stage_timeout_rejected",
                extra={
                    "tenant_id": tenant_id,
                    "entity_id": str(entity_id),
                    "reason": result.error.code if result.error else None,
                },
            )
