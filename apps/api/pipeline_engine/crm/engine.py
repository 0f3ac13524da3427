from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from pipeline_engine import audit
from pipeline_engine.context import get_transition_depth, reset_transition_depth, set_transition_depth
from pipeline_engine.core.config import Settings, get_settings
from pipeline_engine.crm.actions import ActionExecutor, ActionOutcome, Compensation, DeferredEffect, entity_snapshot
from pipeline_engine.crm.conditions import evaluate
from pipeline_engine.crm.contracts import Clock, DeliveryScheduler, EventPublisher
from pipeline_engine.crm.errors import (
    ActionError,
    ActionFailed,
    ConditionNotMet,
    ConfigurationError,
    DefinitionValidationError,
    EntityNotActive,
    EntityNotFoundError,
    PipelineError,
    PipelineNotFoundError,
    SameStage,
    TransitionNotAllowed,
    TransitionRejection,
)
from pipeline_engine.crm.events import EntityClosed, PipelineEvent, StageTransitioned, emit_committed, serialize_value
from pipeline_engine.crm.locks import EntityLockRegistry, entity_locks
from pipeline_engine.crm.models import CRMEntity, CRMPipelineStage, CRMSlaClock
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.crm.schemas import Action, parse_actions, parse_auto_transitions, parse_conditions
from pipeline_engine.metrics import observe_action_failure, observe_auto_transition_block, observe_transition
from pipeline_engine.otel import get_tracer

logger = logging.getLogger("pipeline_engine.crm.engine")
tracer = get_tracer("pipeline_engine.crm.engine")

CLOSED_STATUSES = ("closed", "cancelled")


@dataclass
class TransitionResult:
    ok: bool
    entity: CRMEntity | None = None
    from_stage_id: uuid.UUID | None = None
    to_stage_id: uuid.UUID | None = None
    error: TransitionRejection | None = None
    event_id: uuid.UUID | None = None
    outcomes: list[ActionOutcome] = field(default_factory=list)
    auto_transitions: list[TransitionResult] = field(default_factory=list)


@dataclass
class _ExecutionPlan:
    outcomes: list[ActionOutcome] = field(default_factory=list)
    deferred: list[DeferredEffect] = field(default_factory=list)
    compensations: list[Compensation] = field(default_factory=list)


@dataclass
class _Committed:
    event: PipelineEvent
    plan: _ExecutionPlan


class PipelineEngine:
    def __init__(
        self,
        store: SqlPipelineStore,
        executor: ActionExecutor,
        clock: Clock,
        publisher: EventPublisher,
        scheduler: DeliveryScheduler,
        settings: Settings | None = None,
        locks: EntityLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.clock = clock
        self.publisher = publisher
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.locks = locks or entity_locks

    def transition(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        target_stage_id: uuid.UUID,
        context: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        context = dict(context or {})
        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span("pipeline.transition") as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("entity_id", str(entity_id))
            span.set_attribute("to_stage_id", str(target_stage_id))
            try:
                with self.locks.hold(tenant_id, entity_id):
                    result, committed = self._transition_locked(tenant_id, entity_id, target_stage_id, context)
                outcome = "completed" if result.ok else (result.error.code if result.error else "rejected")
                span.set_attribute("outcome", outcome)
            finally:
                observe_transition(outcome, time.perf_counter() - started)

        if committed is not None:
            self._after_commit(committed.event, committed.plan)
        if result.ok and result.to_stage_id is not None:
            result.auto_transitions = self._run_auto_transitions(tenant_id, entity_id, result.to_stage_id, context)
        return result

    def available_transitions(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        context: Mapping[str, Any] | None = None,
    ) -> list[CRMPipelineStage]:
        context = dict(context or {})
        entity = self.store.load_entity(tenant_id, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        if entity.status != "active":
            return []

        snapshot = entity_snapshot(entity)
        stages: list[CRMPipelineStage] = []
        for rule in self.store.list_transition_rules(tenant_id, entity.pipeline_id, entity.current_stage_id):
            stage = self.store.load_stage(tenant_id, rule.to_stage_id)
            if stage is None or not stage.is_active:
                continue
            conditions = parse_conditions(rule.conditions)
            if all(evaluate(condition, snapshot, context) for condition in conditions):
                stages.append(stage)
        return sorted(stages, key=lambda stage: stage.position)

    def enter_pipeline(
        self,
        tenant_id: str,
        pipeline_id: uuid.UUID,
        owner_id: str | None = None,
        data: Mapping[str, Any] | None = None,
        definition_id: uuid.UUID | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        context = dict(context or {})
        data = dict(data or {})
        store = self.store

        pipeline = store.get_pipeline(tenant_id, pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        if not pipeline.is_active:
            raise ConfigurationError(f"pipeline {pipeline_id} is inactive", details={"pipeline_id": str(pipeline_id)})

        if definition_id is not None:
            self._validate_definition(tenant_id, definition_id, pipeline.entity_type, data)

        stages = [stage for stage in store.list_stages(tenant_id, pipeline_id) if stage.is_active]
        if not stages:
            raise ConfigurationError(f"pipeline {pipeline_id} has no active stages", details={"pipeline_id": str(pipeline_id)})
        first_stage = stages[0]
        entry_actions = parse_actions(first_stage.entry_actions)

        now = self.clock.now()
        entity = CRMEntity(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            pipeline_id=pipeline_id,
            definition_id=definition_id,
            current_stage_id=first_stage.id,
            owner_id=owner_id,
            assignee_ids=[],
            data=data,
            status="active",
            stage_entered_at=now,
            row_version=1,
        )

        with tracer.start_as_current_span("pipeline.enter") as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("entity_id", str(entity.id))
            with self.locks.hold(tenant_id, entity.id):
                plan = _ExecutionPlan()
                try:
                    store.add_entity(entity)
                    self._run_actions(entry_actions, entity, context, plan)
                    self._start_clock(entity, first_stage)
                    event = StageTransitioned(
                        tenant_id=tenant_id,
                        occurred_at=now,
                        entity_id=entity.id,
                        from_stage_id=None,
                        to_stage_id=first_stage.id,
                        context=serialize_value(context),
                    )
                    store.add_event(entity.id, event)
                    store.commit()
                except ActionError as exc:
                    self._abort(tenant_id, entity.id, plan, exc)
                    observe_action_failure(exc.action_type, "fail_fast")
                    return TransitionResult(
                        ok=False,
                        to_stage_id=first_stage.id,
                        error=ActionFailed(action_type=exc.action_type, reason=exc.message),
                    )
                except Exception as exc:
                    self._abort(tenant_id, entity.id, plan, exc)
                    raise

                audit.record(
                    actor_id=str(context.get("actor_id") or "system"),
                    tenant_id=tenant_id,
                    entity_type="crm.entity",
                    entity_id=str(entity.id),
                    action="entity.created",
                    before=None,
                    after={"pipeline_id": str(pipeline_id), "stage_id": str(first_stage.id), "owner_id": owner_id},
                )
                logger.info(
                    "pipeline.entity.entered",
                    extra={
                        "tenant_id": tenant_id,
                        "entity_id": str(entity.id),
                        "to_stage_id": str(first_stage.id),
                    },
                )

        self._after_commit(event, plan)
        result = TransitionResult(
            ok=True,
            entity=entity,
            from_stage_id=None,
            to_stage_id=first_stage.id,
            event_id=event.event_id,
            outcomes=plan.outcomes,
        )
        result.auto_transitions = self._run_auto_transitions(tenant_id, entity.id, first_stage.id, context)
        return result

    def close(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        status: str = "closed",
        context: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        if status not in CLOSED_STATUSES:
            raise ValueError(f"status must be one of {', '.join(CLOSED_STATUSES)}")
        context = dict(context or {})
        store = self.store

        with tracer.start_as_current_span("pipeline.close") as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("entity_id", str(entity_id))
            with self.locks.hold(tenant_id, entity_id):
                entity = store.load_entity(tenant_id, entity_id, for_update=True)
                if entity is None:
                    store.rollback()
                    raise EntityNotFoundError(entity_id)
                if entity.status != "active":
                    return self._reject(entity, EntityNotActive(status=entity.status), entity.current_stage_id)

                now = self.clock.now()
                try:
                    active_clock = store.get_active_clock(tenant_id, entity.id)
                    if active_clock is not None:
                        store.resolve_clock(tenant_id, active_clock.id, now)
                    cancelled_timers = store.cancel_timers(tenant_id, entity.id)
                    superseded = store.supersede_events(tenant_id, entity.id, now)
                    before_status = entity.status
                    entity.status = status
                    event = EntityClosed(
                        tenant_id=tenant_id,
                        occurred_at=now,
                        entity_id=entity.id,
                        status=status,
                        stage_id=entity.current_stage_id,
                    )
                    store.add_event(entity.id, event)
                    store.save_entity(entity)
                    store.commit()
                except Exception:
                    store.rollback()
                    raise

                audit.record(
                    actor_id=str(context.get("actor_id") or "system"),
                    tenant_id=tenant_id,
                    entity_type="crm.entity",
                    entity_id=str(entity.id),
                    action="entity.closed",
                    before={"status": before_status},
                    after={"status": status},
                )
                logger.info(
                    "pipeline.entity.closed",
                    extra={
                        "tenant_id": tenant_id,
                        "entity_id": str(entity.id),
                        "status": status,
                        "reason": f"timers_cancelled={cancelled_timers} events_superseded={superseded}",
                    },
                )

        self._after_commit(event, _ExecutionPlan())
        return TransitionResult(
            ok=True,
            entity=entity,
            from_stage_id=entity.current_stage_id,
            to_stage_id=entity.current_stage_id,
            event_id=event.event_id,
        )

    def _transition_locked(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        target_stage_id: uuid.UUID,
        context: dict[str, Any],
    ) -> tuple[TransitionResult, _Committed | None]:
        store = self.store
        entity = store.load_entity(tenant_id, entity_id, for_update=True)
        if entity is None:
            store.rollback()
            raise EntityNotFoundError(entity_id)

        target = store.load_stage(tenant_id, target_stage_id)
        if target is None or target.pipeline_id != entity.pipeline_id:
            store.rollback()
            raise ConfigurationError(
                f"stage {target_stage_id} is not part of pipeline {entity.pipeline_id}",
                details={"stage_id": str(target_stage_id), "pipeline_id": str(entity.pipeline_id)},
            )

        if entity.status != "active":
            return self._reject(entity, EntityNotActive(status=entity.status), target.id), None
        if target.id == entity.current_stage_id:
            return self._reject(entity, SameStage(stage_id=target.id), target.id), None

        current = store.load_stage(tenant_id, entity.current_stage_id)
        if current is None:
            store.rollback()
            raise ConfigurationError(
                f"current stage {entity.current_stage_id} is missing",
                details={"stage_id": str(entity.current_stage_id)},
            )

        rule = store.get_transition_rule(tenant_id, entity.pipeline_id, current.id, target.id)
        if rule is None or not target.is_active:
            return self._reject(entity, TransitionNotAllowed(from_stage_id=current.id, to_stage_id=target.id), target.id), None

        try:
            conditions = parse_conditions(rule.conditions)
            exit_actions = parse_actions(current.exit_actions)
            entry_actions = parse_actions(target.entry_actions)
        except ConfigurationError:
            store.rollback()
            raise

        snapshot = entity_snapshot(entity)
        for index, condition in enumerate(conditions):
            if not evaluate(condition, snapshot, context):
                condition_id = condition.id or str(index)
                return self._reject(entity, ConditionNotMet(condition_id=condition_id), target.id), None

        from_stage_id = current.id
        plan = _ExecutionPlan()
        try:
            self._run_actions(exit_actions, entity, context, plan)

            now = self.clock.now()
            active_clock = store.get_active_clock(tenant_id, entity.id)
            if active_clock is not None:
                store.resolve_clock(tenant_id, active_clock.id, now)

            entity.current_stage_id = target.id
            entity.stage_entered_at = now

            self._run_actions(entry_actions, entity, context, plan)
            self._start_clock(entity, target)

            event = StageTransitioned(
                tenant_id=tenant_id,
                occurred_at=now,
                entity_id=entity.id,
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                context=serialize_value(context),
            )
            store.add_event(entity.id, event)
            store.save_entity(entity)
            store.commit()
        except ActionError as exc:
            self._abort(tenant_id, entity_id, plan, exc)
            observe_action_failure(exc.action_type, "fail_fast")
            return TransitionResult(
                ok=False,
                entity=entity,
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                error=ActionFailed(action_type=exc.action_type, reason=exc.message),
            ), None
        except Exception as exc:
            self._abort(tenant_id, entity_id, plan, exc)
            raise

        audit.record(
            actor_id=str(context.get("actor_id") or "system"),
            tenant_id=tenant_id,
            entity_type="crm.entity",
            entity_id=str(entity.id),
            action="entity.transitioned",
            before={"stage_id": str(from_stage_id)},
            after={"stage_id": str(target.id)},
        )
        logger.info(
            "pipeline.transition.completed",
            extra={
                "tenant_id": tenant_id,
                "entity_id": str(entity.id),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(target.id),
                "outcome": "completed",
                "depth": get_transition_depth() or 0,
            },
        )
        result = TransitionResult(
            ok=True,
            entity=entity,
            from_stage_id=from_stage_id,
            to_stage_id=target.id,
            event_id=event.event_id,
            outcomes=plan.outcomes,
        )
        return result, _Committed(event, plan)

    def _run_actions(
        self,
        actions: list[Action],
        entity: CRMEntity,
        context: Mapping[str, Any],
        plan: _ExecutionPlan,
    ) -> None:
        for action in actions:
            outcome = self.executor.execute(action, entity, context)
            plan.outcomes.append(outcome)
            plan.deferred.extend(outcome.deferred)
            if outcome.compensation is not None:
                plan.compensations.append(outcome.compensation)

    def _start_clock(self, entity: CRMEntity, stage: CRMPipelineStage) -> None:
        if not stage.sla_minutes:
            return
        started_at = entity.stage_entered_at
        self.store.add_clock(
            CRMSlaClock(
                id=uuid.uuid4(),
                tenant_id=entity.tenant_id,
                entity_id=entity.id,
                stage_id=stage.id,
                duration_minutes=stage.sla_minutes,
                started_at=started_at,
                breach_at=started_at + timedelta(minutes=stage.sla_minutes),
                status="active",
            )
        )

    def _reject(
        self,
        entity: CRMEntity,
        error: TransitionRejection,
        target_stage_id: uuid.UUID | None,
    ) -> TransitionResult:
        from_stage_id = entity.current_stage_id
        self.store.rollback()
        logger.info(
            "pipeline.transition.rejected",
            extra={
                "tenant_id": entity.tenant_id,
                "entity_id": str(entity.id),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(target_stage_id) if target_stage_id else None,
                "outcome": "rejected",
                "reason": error.code,
            },
        )
        return TransitionResult(
            ok=False,
            entity=entity,
            from_stage_id=from_stage_id,
            to_stage_id=target_stage_id,
            error=error,
        )

    def _abort(self, tenant_id: str, entity_id: uuid.UUID, plan: _ExecutionPlan, exc: Exception) -> None:
        self.store.rollback()
        logger.warning(
            "pipeline.transition.rolled_back",
            extra={
                "tenant_id": tenant_id,
                "entity_id": str(entity_id),
                "action_type": getattr(exc, "action_type", None),
                "error": str(exc),
            },
        )
        for compensation in reversed(plan.compensations):
            try:
                compensation.run()
            except Exception as comp_exc:
                logger.error(
                    "pipeline.action.compensation_failed",
                    extra={
                        "tenant_id": tenant_id,
                        "entity_id": str(entity_id),
                        "action_type": compensation.action_type,
                        "reason": compensation.name,
                        "error": str(comp_exc),
                    },
                )

    def _after_commit(self, event: PipelineEvent, plan: _ExecutionPlan) -> None:
        emit_committed(event, self.publisher, self.scheduler)
        for effect in plan.deferred:
            try:
                effect.run()
            except Exception as exc:
                observe_action_failure(effect.action_type, "best_effort")
                logger.warning(
                    "pipeline.action.deferred_failed",
                    extra={
                        "tenant_id": event.tenant_id,
                        "event_id": str(event.event_id),
                        "action_type": effect.action_type,
                        "error": str(exc),
                    },
                )

    def _validate_definition(
        self,
        tenant_id: str,
        definition_id: uuid.UUID,
        entity_type: str,
        data: Mapping[str, Any],
    ) -> None:
        definition = self.store.get_definition(tenant_id, definition_id)
        if definition is None or not definition.is_active:
            raise ConfigurationError(
                f"entity definition {definition_id} is missing or inactive",
                details={"definition_id": str(definition_id)},
            )
        if definition.entity_type != entity_type:
            raise ConfigurationError(
                f"definition entity type {definition.entity_type} does not match pipeline entity type {entity_type}",
                details={"definition_id": str(definition_id)},
            )
        required = (definition.schema_definition or {}).get("required") or []
        missing = [key for key in required if data.get(key) in (None, "")]
        if missing:
            raise DefinitionValidationError("missing required fields", details={"missing": missing})

    def _run_auto_transitions(
        self,
        tenant_id: str,
        entity_id: uuid.UUID,
        stage_id: uuid.UUID,
        context: dict[str, Any],
    ) -> list[TransitionResult]:
        stage = self.store.load_stage(tenant_id, stage_id)
        if stage is None or not stage.auto_transitions:
            return []
        entity = self.store.load_entity(tenant_id, entity_id)
        if entity is None or entity.status != "active" or entity.current_stage_id != stage_id:
            return []

        try:
            rules = parse_auto_transitions(stage.auto_transitions)
        except ConfigurationError as exc:
            logger.warning(
                "pipeline.auto_transition.failed",
                extra={"tenant_id": tenant_id, "entity_id": str(entity_id), "error": exc.message},
            )
            return []

        snapshot = entity_snapshot(entity)
        match = next(
            (
                rule
                for rule in rules
                if rule.target_stage_id != stage_id
                and (rule.condition is None or evaluate(rule.condition, snapshot, context))
            ),
            None,
        )
        if match is None:
            return []

        depth = get_transition_depth() or 0
        max_depth = self.settings.auto_transition_max_depth
        if depth >= max_depth:
            observe_auto_transition_block()
            logger.warning(
                "pipeline.auto_transition.blocked",
                extra={
                    "tenant_id": tenant_id,
                    "entity_id": str(entity_id),
                    "from_stage_id": str(stage_id),
                    "to_stage_id": str(match.target_stage_id),
                    "reason": "MAX_DEPTH",
                    "depth": depth,
                },
            )
            audit.record(
                actor_id=str(context.get("actor_id") or "system"),
                tenant_id=tenant_id,
                entity_type="crm.entity",
                entity_id=str(entity_id),
                action="entity.auto_transition_blocked",
                before=None,
                after={"stage_id": str(stage_id), "target_stage_id": str(match.target_stage_id), "depth": depth},
            )
            return []

        auto_context = {**context, "auto_transition": True, "auto_from_stage_id": str(stage_id)}
        token = set_transition_depth(depth + 1)
        try:
            result = self.transition(tenant_id, entity_id, match.target_stage_id, auto_context)
        except PipelineError as exc:
            logger.warning(
                "pipeline.auto_transition.failed",
                extra={
                    "tenant_id": tenant_id,
                    "entity_id": str(entity_id),
                    "to_stage_id": str(match.target_stage_id),
                    "error": exc.message,
                },
            )
            return []
        finally:
            reset_transition_depth(token)
        return [result]
