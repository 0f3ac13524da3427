from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from pipeline_engine.crm.assignment import AssignmentContext, AssignmentResolver
from pipeline_engine.crm.conditions import evaluate, render_template
from pipeline_engine.crm.contracts import Clock, Integration, Notification, NotificationSender
from pipeline_engine.crm.errors import ActionError, ConfigurationError
from pipeline_engine.crm.models import CRMEntity, CRMStageTimer
from pipeline_engine.crm.schemas import (
    Action,
    AssignUsersAction,
    CreateTimerAction,
    ExecuteIntegrationAction,
    SendNotificationAction,
    UpdateFieldAction,
)

logger = logging.getLogger("pipeline_engine.crm.actions")


def entity_snapshot(entity: CRMEntity) -> dict[str, Any]:
    return {
        "id": str(entity.id),
        "tenant_id": entity.tenant_id,
        "pipeline_id": str(entity.pipeline_id),
        "definition_id": str(entity.definition_id) if entity.definition_id else None,
        "current_stage_id": str(entity.current_stage_id),
        "owner_id": entity.owner_id,
        "assignee_ids": list(entity.assignee_ids or []),
        "status": entity.status,
        "stage_entered_at": entity.stage_entered_at.isoformat() if entity.stage_entered_at else None,
        "data": dict(entity.data or {}),
    }


@dataclass
class DeferredEffect:
    action_type: str
    run: Callable[[], None]


@dataclass
class Compensation:
    action_type: str
    name: str
    run: Callable[[], None]


@dataclass
class ActionOutcome:
    action_type: str
    skipped: bool = False
    changes: dict[str, Any] = field(default_factory=dict)
    deferred: list[DeferredEffect] = field(default_factory=list)
    compensation: Compensation | None = None


class ActionExecutor:
    def __init__(
        self,
        store: Any,
        resolver: AssignmentResolver,
        clock: Clock,
        notifier: NotificationSender,
        integrations: Mapping[str, Integration] | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.clock = clock
        self.notifier = notifier
        self.integrations = dict(integrations or {})

    def execute(self, action: Action, entity: CRMEntity, context: Mapping[str, Any]) -> ActionOutcome:
        snapshot = entity_snapshot(entity)
        if action.condition is not None and not evaluate(action.condition, snapshot, context):
            logger.debug(
                "pipeline.action.skipped",
                extra={"action_type": action.type, "entity_id": str(entity.id), "tenant_id": entity.tenant_id},
            )
            return ActionOutcome(action_type=action.type, skipped=True)

        if isinstance(action, UpdateFieldAction):
            return self._update_field(action, entity, snapshot, context)
        if isinstance(action, AssignUsersAction):
            return self._assign_users(action, entity)
        if isinstance(action, SendNotificationAction):
            return self._send_notification(action, entity, snapshot, context)
        if isinstance(action, CreateTimerAction):
            return self._create_timer(action, entity, snapshot, context)
        if isinstance(action, ExecuteIntegrationAction):
            return self._execute_integration(action, entity, snapshot, context)
        raise ConfigurationError(f"unsupported action type: {getattr(action, 'type', None)}")

    def _update_field(
        self,
        action: UpdateFieldAction,
        entity: CRMEntity,
        snapshot: dict[str, Any],
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        value = render_template(action.value, snapshot, context)
        data = dict(entity.data or {})
        before = data.get(action.field)
        data[action.field] = value
        entity.data = data
        return ActionOutcome(action_type=action.type, changes={action.field: {"before": before, "after": value}})

    def _assign_users(self, action: AssignUsersAction, entity: CRMEntity) -> ActionOutcome:
        context = AssignmentContext(
            tenant_id=entity.tenant_id,
            pipeline_id=entity.pipeline_id,
            stage_id=entity.current_stage_id,
            owner_id=entity.owner_id,
        )

        if not action.multiple:
            owner_id = self.resolver.resolve(action.strategy, action.candidates, context, owner_id=action.owner_id)
            if owner_id is None:
                raise ActionError(action.type, f"no owner resolved by strategy {action.strategy}")
            before = entity.owner_id
            entity.owner_id = owner_id
            return ActionOutcome(action_type=action.type, changes={"owner_id": {"before": before, "after": owner_id}})

        count = action.count or max(len(action.candidates), 1)
        assignees: list[str] = []
        for _ in range(count):
            resolved = self.resolver.resolve(action.strategy, action.candidates, context, owner_id=action.owner_id)
            if resolved is not None and resolved not in assignees:
                assignees.append(resolved)
        if not assignees:
            raise ActionError(action.type, f"no assignees resolved by strategy {action.strategy}")
        before_assignees = list(entity.assignee_ids or [])
        entity.assignee_ids = assignees
        return ActionOutcome(
            action_type=action.type,
            changes={"assignee_ids": {"before": before_assignees, "after": assignees}},
        )

    def _send_notification(
        self,
        action: SendNotificationAction,
        entity: CRMEntity,
        snapshot: dict[str, Any],
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        recipient = render_template(action.recipient_id, snapshot, context) if action.recipient_id else entity.owner_id
        notification = Notification(
            tenant_id=entity.tenant_id,
            entity_id=entity.id,
            notification_type=action.notification_type,
            recipient_id=str(recipient) if recipient is not None else None,
            payload=render_template(action.payload, snapshot, context),
        )
        return ActionOutcome(
            action_type=action.type,
            deferred=[DeferredEffect(action_type=action.type, run=lambda: self.notifier.send(notification))],
        )

    def _create_timer(
        self,
        action: CreateTimerAction,
        entity: CRMEntity,
        snapshot: dict[str, Any],
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        scheduled_at = self.clock.now() + timedelta(minutes=action.delay_minutes)
        timer = CRMStageTimer(
            id=uuid.uuid4(),
            tenant_id=entity.tenant_id,
            entity_id=entity.id,
            stage_id=entity.current_stage_id,
            name=action.name,
            timer_type=action.timer_type,
            scheduled_at=scheduled_at,
            action_config=render_template(action.action_config, snapshot, context),
            status="scheduled",
        )
        try:
            self.store.add_timer(timer)
        except Exception as exc:
            raise ActionError(action.type, f"timer could not be scheduled: {exc}") from exc
        return ActionOutcome(
            action_type=action.type,
            changes={"timer": {"id": str(timer.id), "name": timer.name, "scheduled_at": scheduled_at.isoformat()}},
        )

    def _execute_integration(
        self,
        action: ExecuteIntegrationAction,
        entity: CRMEntity,
        snapshot: dict[str, Any],
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        integration = self.integrations.get(action.integration)
        if integration is None:
            raise ConfigurationError(
                f"unknown integration: {action.integration}",
                details={"integration": action.integration},
            )
        config = render_template(action.config, snapshot, context)
        tenant_id = entity.tenant_id

        if not action.fail_fast:
            return ActionOutcome(
                action_type=action.type,
                deferred=[
                    DeferredEffect(
                        action_type=action.type,
                        run=lambda: integration.execute(tenant_id, snapshot, config),
                    )
                ],
            )

        try:
            result = integration.execute(tenant_id, snapshot, config)
        except Exception as exc:
            raise ActionError(action.type, f"integration {action.integration} failed: {exc}") from exc

        return ActionOutcome(
            action_type=action.type,
            compensation=Compensation(
                action_type=action.type,
                name=action.integration,
                run=lambda: integration.compensate(tenant_id, snapshot, config, result),
            ),
        )
