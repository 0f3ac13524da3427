from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, ClassVar


class PipelineError(Exception):
    code = "pipeline_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(PipelineError):
    """Invalid or missing pipeline configuration. Never retried."""

    code = "configuration_error"


class UnknownStrategyError(ConfigurationError):
    code = "unknown_strategy"

    def __init__(self, strategy: str) -> None:
        super().__init__(f"unknown assignment strategy: {strategy}", details={"strategy": strategy})
        self.strategy = strategy


class DefinitionValidationError(PipelineError):
    code = "definition_validation_failed"


class NotFoundError(PipelineError):
    code = "not_found"


class EntityNotFoundError(NotFoundError):
    code = "entity_not_found"

    def __init__(self, entity_id: uuid.UUID) -> None:
        super().__init__(f"entity not found: {entity_id}", details={"entity_id": str(entity_id)})
        self.entity_id = entity_id


class PipelineNotFoundError(NotFoundError):
    code = "pipeline_not_found"

    def __init__(self, pipeline_id: uuid.UUID) -> None:
        super().__init__(f"pipeline not found: {pipeline_id}", details={"pipeline_id": str(pipeline_id)})
        self.pipeline_id = pipeline_id


class ActionError(PipelineError):
    code = "action_failed"

    def __init__(self, action_type: str, message: str, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.action_type = action_type


@dataclass(frozen=True)
class TransitionRejection:
    code: ClassVar[str] = "transition_rejected"

    @property
    def message(self) -> str:
        return self.code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class TransitionNotAllowed(TransitionRejection):
    code: ClassVar[str] = "transition_not_allowed"
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"no transition rule from {self.from_stage_id} to {self.to_stage_id}"


@dataclass(frozen=True)
class ConditionNotMet(TransitionRejection):
    code: ClassVar[str] = "condition_not_met"
    condition_id: str

    @property
    def message(self) -> str:
        return f"condition not met: {self.condition_id}"

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "condition_id": self.condition_id}


@dataclass(frozen=True)
class SameStage(TransitionRejection):
    code: ClassVar[str] = "same_stage"
    stage_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"entity is already in stage {self.stage_id}"


@dataclass(frozen=True)
class EntityNotActive(TransitionRejection):
    code: ClassVar[str] = "entity_not_active"
    status: str

    @property
    def message(self) -> str:
        return f"entity status is {self.status}"


@dataclass(frozen=True)
class ActionFailed(TransitionRejection):
    code: ClassVar[str] = "action_failed"
    action_type: str
    reason: str

    @property
    def message(self) -> str:
        return f"{self.action_type} failed: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "action_type": self.action_type}
