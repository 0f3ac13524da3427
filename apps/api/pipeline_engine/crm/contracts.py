from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pipeline_engine.crm.events import PipelineEvent
    from pipeline_engine.crm.models import CRMStageTimer


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class OrgLookup(Protocol):
    def manager_of(self, tenant_id: str, owner_id: str) -> str | None: ...


class StaticOrgLookup:
    """Manager lookup backed by a mapping.

    Keys are either ``"<tenant_id>:<owner_id>"`` or a bare ``owner_id``; the
    tenant-qualified key wins.
    """

    def __init__(self, managers: Mapping[str, str] | None = None) -> None:
        self._managers = dict(managers or {})

    def manager_of(self, tenant_id: str, owner_id: str) -> str | None:
        scoped = self._managers.get(f"{tenant_id}:{owner_id}")
        if scoped is not None:
            return scoped
        return self._managers.get(owner_id)


@dataclass(frozen=True)
class HttpResult:
    status_code: int | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


class HttpSender(Protocol):
    def post(self, url: str, payload: dict[str, Any], timeout: float) -> HttpResult: ...


class Integration(Protocol):
    def execute(self, tenant_id: str, entity: Mapping[str, Any], config: Mapping[str, Any]) -> Any: ...

    def compensate(
        self,
        tenant_id: str,
        entity: Mapping[str, Any],
        config: Mapping[str, Any],
        result: Any,
    ) -> None: ...


@dataclass(frozen=True)
class Notification:
    tenant_id: str
    entity_id: uuid.UUID
    notification_type: str
    recipient_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    def send(self, notification: Notification) -> None: ...


class EventPublisher(Protocol):
    def publish(self, event: PipelineEvent) -> None: ...


class DeliveryScheduler(Protocol):
    def schedule(self, tenant_id: str, event_id: uuid.UUID) -> None: ...


@runtime_checkable
class SupportsTimerProcessing(Protocol):
    def due_timers(self, now: datetime, limit: int, tenant_id: str | None = None) -> list[CRMStageTimer]: ...

    def mark_timer_fired(self, tenant_id: str, timer_id: uuid.UUID, now: datetime) -> bool: ...
