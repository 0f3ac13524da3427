from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from pipeline_engine.crm.errors import ConfigurationError


ConditionOp = Literal["eq", "neq", "gt", "gte", "lt", "lte", "in", "contains", "not_contains", "exists", "empty"]


class ConditionLeaf(BaseModel):
    id: str | None = None
    field: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None
    case_insensitive: bool = False


class ConditionAll(BaseModel):
    id: str | None = None
    all: list["Condition"] = Field(min_length=1)


class ConditionAny(BaseModel):
    id: str | None = None
    any: list["Condition"] = Field(min_length=1)


class ConditionNot(BaseModel):
    id: str | None = None
    not_: "Condition" = Field(alias="not")

    model_config = ConfigDict(populate_by_name=True)


Condition = ConditionLeaf | ConditionAll | ConditionAny | ConditionNot

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()
ConditionNot.model_rebuild()


def _parse_condition_tree(value: Any) -> Condition:
    if isinstance(value, (ConditionLeaf, ConditionAll, ConditionAny, ConditionNot)):
        return value
    if not isinstance(value, dict):
        raise ValueError("condition must be an object")

    condition_id = value.get("id")
    if "all" in value:
        items = value.get("all")
        if not isinstance(items, list) or not items:
            raise ValueError("all must be a non-empty list")
        return ConditionAll(id=condition_id, all=[_parse_condition_tree(item) for item in items])

    if "any" in value:
        items = value.get("any")
        if not isinstance(items, list) or not items:
            raise ValueError("any must be a non-empty list")
        return ConditionAny(id=condition_id, any=[_parse_condition_tree(item) for item in items])

    if "not" in value:
        return ConditionNot(id=condition_id, not_=_parse_condition_tree(value.get("not")))

    return ConditionLeaf.model_validate(value)


def parse_condition(value: Any) -> Condition:
    try:
        return _parse_condition_tree(value)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError("malformed condition", details={"error": str(exc)[:500]}) from exc


def parse_conditions(value: Any) -> list[Condition]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError("conditions must be a list")
    return [parse_condition(item) for item in value]


def dump_condition(condition: Condition) -> dict[str, Any]:
    return condition.model_dump(by_alias=True, exclude_none=True, mode="json")


class _ConditionalAction(BaseModel):
    condition: Condition | None = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_action_condition(cls, value: Any) -> Any:
        if value is None:
            return None
        return _parse_condition_tree(value)


class UpdateFieldAction(_ConditionalAction):
    type: Literal["UPDATE_FIELD"]
    field: str = Field(min_length=1)
    value: Any = None


class AssignUsersAction(_ConditionalAction):
    type: Literal["ASSIGN_USERS"]
    strategy: str = Field(min_length=1)
    candidates: list[str] = Field(default_factory=list)
    owner_id: str | None = None
    multiple: bool = False
    count: int | None = Field(default=None, ge=1)


class SendNotificationAction(_ConditionalAction):
    type: Literal["SEND_NOTIFICATION"]
    notification_type: str = Field(min_length=1)
    recipient_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


TimerType = Literal["escalation", "reminder", "stage_timeout"]


class CreateTimerAction(_ConditionalAction):
    type: Literal["CREATE_TIMER"]
    name: str = Field(min_length=1)
    timer_type: TimerType = "stage_timeout"
    delay_minutes: int = Field(default=60, ge=0)
    action_config: dict[str, Any] = Field(default_factory=dict)


class ExecuteIntegrationAction(_ConditionalAction):
    type: Literal["EXECUTE_INTEGRATION"]
    integration: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = False


Action = Annotated[
    UpdateFieldAction | AssignUsersAction | SendNotificationAction | CreateTimerAction | ExecuteIntegrationAction,
    Field(discriminator="type"),
]

_action_list_adapter = TypeAdapter(list[Action])


def parse_actions(value: Any) -> list[Action]:
    if value is None:
        return []
    try:
        return _action_list_adapter.validate_python(value)
    except ValidationError as exc:
        raise ConfigurationError("malformed action", details={"error": str(exc)[:500]}) from exc


def dump_actions(actions: list[Action]) -> list[dict[str, Any]]:
    return [action.model_dump(mode="json", by_alias=True, exclude_none=True) for action in actions]


class AutoTransition(BaseModel):
    target_stage_id: UUID
    condition: Condition | None = None

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_auto_condition(cls, value: Any) -> Any:
        if value is None:
            return None
        return _parse_condition_tree(value)


_auto_transition_list_adapter = TypeAdapter(list[AutoTransition])


def parse_auto_transitions(value: Any) -> list[AutoTransition]:
    if value is None:
        return []
    try:
        return _auto_transition_list_adapter.validate_python(value)
    except ValidationError as exc:
        raise ConfigurationError("malformed auto transition", details={"error": str(exc)[:500]}) from exc


class EscalationStrategy(BaseModel):
    strategy: str = Field(default="manager_of", min_length=1)
    candidates: list[str] = Field(default_factory=list)
    owner_id: str | None = None


def parse_escalation_strategy(value: Any) -> EscalationStrategy:
    if value is None:
        return EscalationStrategy()
    try:
        return EscalationStrategy.model_validate(value)
    except ValidationError as exc:
        raise ConfigurationError("malformed escalation strategy", details={"error": str(exc)[:500]}) from exc


class AutoTransitionCreate(BaseModel):
    target_stage: str = Field(min_length=1)
    condition: dict[str, Any] | None = None


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(ge=0)
    entry_actions: list[dict[str, Any]] = Field(default_factory=list)
    exit_actions: list[dict[str, Any]] = Field(default_factory=list)
    sla_minutes: int | None = Field(default=None, ge=1)
    escalation_strategy: dict[str, Any] | None = None
    escalation_repeat_minutes: int | None = Field(default=None, ge=1)
    auto_transitions: list[AutoTransitionCreate] = Field(default_factory=list)
    is_active: bool = True

    @model_validator(mode="after")
    def validate_stage_configuration(self) -> "StageCreate":
        self.entry_actions = dump_actions(_action_list_adapter.validate_python(self.entry_actions))
        self.exit_actions = dump_actions(_action_list_adapter.validate_python(self.exit_actions))
        if self.escalation_strategy is not None:
            self.escalation_strategy = EscalationStrategy.model_validate(self.escalation_strategy).model_dump()
        for auto in self.auto_transitions:
            if auto.condition is not None:
                auto.condition = dump_condition(_parse_condition_tree(auto.condition))
        return self


class TransitionRuleCreate(BaseModel):
    from_stage: str = Field(min_length=1)
    to_stage: str = Field(min_length=1)
    conditions: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_rule(self) -> "TransitionRuleCreate":
        if self.from_stage == self.to_stage:
            raise ValueError("a stage cannot be its own transition target")
        self.conditions = [dump_condition(_parse_condition_tree(item)) for item in self.conditions]
        return self


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    is_active: bool = True
    stages: list[StageCreate] = Field(min_length=1)
    transitions: list[TransitionRuleCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_pipeline_structure(self) -> "PipelineCreate":
        positions = [stage.position for stage in self.stages]
        if positions != sorted(set(positions)):
            raise ValueError("stage positions must be unique and strictly increasing")

        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise ValueError("stage names must be unique within a pipeline")

        known = set(names)
        for rule in self.transitions:
            if rule.from_stage not in known or rule.to_stage not in known:
                raise ValueError(f"transition references unknown stage: {rule.from_stage} -> {rule.to_stage}")

        pairs = [(rule.from_stage, rule.to_stage) for rule in self.transitions]
        if len(set(pairs)) != len(pairs):
            raise ValueError("duplicate transition rule")

        for stage in self.stages:
            for auto in stage.auto_transitions:
                if auto.target_stage not in known:
                    raise ValueError(f"auto transition references unknown stage: {auto.target_stage}")
                if auto.target_stage == stage.name:
                    raise ValueError("a stage cannot be its own transition target")
        return self


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    position: int
    entry_actions: list[dict[str, Any]]
    exit_actions: list[dict[str, Any]]
    sla_minutes: int | None
    escalation_strategy: dict[str, Any] | None
    escalation_repeat_minutes: int | None
    auto_transitions: list[dict[str, Any]]
    is_active: bool


class TransitionRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    from_stage_id: UUID
    to_stage_id: UUID
    conditions: list[dict[str, Any]]


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    entity_type: str
    is_active: bool
    stages: list[PipelineStageRead]
    transitions: list[TransitionRuleRead]
    created_at: datetime


class EntityDefinitionCreate(BaseModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    required_fields: list[str] = Field(default_factory=list)
    is_active: bool = True


class EntityDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    entity_type: str
    schema_definition: dict[str, Any]
    is_active: bool


class EntityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    pipeline_id: UUID
    definition_id: UUID | None
    current_stage_id: UUID
    owner_id: str | None
    assignee_ids: list[str]
    data: dict[str, Any]
    status: str
    stage_entered_at: datetime
    row_version: int


class EnterPipelineRequest(BaseModel):
    pipeline_id: UUID
    definition_id: UUID | None = None
    owner_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    target_stage_id: UUID
    context: dict[str, Any] = Field(default_factory=dict)


class CloseRequest(BaseModel):
    status: Literal["closed", "cancelled"] = "closed"
    context: dict[str, Any] = Field(default_factory=dict)


class TransitionResultRead(BaseModel):
    ok: bool
    entity: EntityRead | None
    from_stage_id: UUID | None
    to_stage_id: UUID | None
    event_id: UUID | None
    error: dict[str, Any] | None
    auto_transitions: list["TransitionResultRead"] = Field(default_factory=list)


class AvailableTransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    position: int


class SlaClockRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    stage_id: UUID
    duration_minutes: int
    started_at: datetime
    breach_at: datetime
    status: str
    resolved_at: datetime | None
    breached_at: datetime | None


class AuditEntryRead(BaseModel):
    id: str
    actor_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    correlation_id: str | None
    transition_depth: int | None
    occurred_at: datetime


class EscalationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    clock_id: UUID | None
    level: int
    from_owner_id: str | None
    to_owner_id: str | None
    reason: str
    escalated_at: datetime


class SweepReportRead(BaseModel):
    breached_clock_ids: list[UUID]
    escalation_ids: list[UUID]
    skipped: int
    failed_clock_ids: list[UUID]
    fired_timer_ids: list[UUID]


class WebhookEndpointCreate(BaseModel):
    url: str = Field(min_length=1, pattern=r"^https?://")
    event_types: list[str] = Field(min_length=1)
    is_active: bool = True
    max_attempts: int | None = Field(default=None, ge=1, le=50)
    timeout_seconds: float | None = Field(default=None, gt=0, le=120)


class WebhookEndpointRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    url: str
    event_types: list[str]
    is_active: bool
    max_attempts: int | None
    timeout_seconds: float | None
    created_at: datetime


class DeliveryAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    endpoint_id: UUID
    url: str
    attempt_number: int
    outcome: str
    status_code: int | None
    error: str | None
    attempted_at: datetime
