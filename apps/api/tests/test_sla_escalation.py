from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_engine import audit
from pipeline_engine.core.config import Settings, get_settings
from pipeline_engine.core.database import Base
from pipeline_engine.core.events import InProcessEventBus
from pipeline_engine.crm.assignment import InMemoryCursorStore
from pipeline_engine.crm.contracts import StaticOrgLookup
from pipeline_engine.crm.definitions import PipelineDefinitionService
from pipeline_engine.crm.engine import PipelineEngine
from pipeline_engine.crm.escalation import EscalationManager
from pipeline_engine.crm.events import ENTITY_ESCALATED, BusEventPublisher
from pipeline_engine.crm.factory import PipelineComponents, build_components
from pipeline_engine.crm.models import CRMEntity, CRMStageTimer
from pipeline_engine.crm.notifications import RecordingNotificationSender
from pipeline_engine.crm.repositories import SqlPipelineStore
from pipeline_engine.crm.schemas import PipelineCreate, PipelineRead
from pipeline_engine.crm.sla import SlaMonitor
from pipeline_engine.crm.webhooks import OutboxOnlyScheduler

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TENANT = "t1"


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, minutes: int) -> datetime:
        self.current = self.current + timedelta(minutes=minutes)
        return self.current


class StaleLevelStore(SqlPipelineStore):
    """Reports a stale maximum escalation level on the first lookup."""

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.lookups = 0

    def max_escalation_level(self, tenant_id: str, entity_id: uuid.UUID) -> int:
        self.lookups += 1
        if self.lookups == 1:
            return 0
        return super().max_escalation_level(tenant_id, entity_id)


class LockOrderStore(SqlPipelineStore):
    """Records the order in which entity and clock rows are written or locked."""

    def __init__(self, session: Session) -> None:
        super().__init__(session)
        self.calls: list[str] = []

    def load_entity(self, tenant_id: str, entity_id: uuid.UUID, for_update: bool = False) -> CRMEntity | None:
        if for_update:
            self.calls.append("lock_entity")
        return super().load_entity(tenant_id, entity_id, for_update=for_update)

    def breach_clock(self, tenant_id: str, clock_id: uuid.UUID, now: datetime) -> bool:
        self.calls.append("update_clock")
        return super().breach_clock(tenant_id, clock_id, now)

    def resolve_clock(self, tenant_id: str, clock_id: uuid.UUID, now: datetime) -> bool:
        self.calls.append("update_clock")
        return super().resolve_clock(tenant_id, clock_id, now)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WEBHOOK_DELIVERY_MODE", "outbox")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture()
def notifier() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture()
def components(db_session: Session, clock: FrozenClock, notifier: RecordingNotificationSender) -> PipelineComponents:
    return build_components(
        db_session,
        clock=clock,
        org_lookup=StaticOrgLookup({"owner-1": "manager-1", "owner-2": "manager-2"}),
        integrations={},
        notifier=notifier,
        publisher=BusEventPublisher(InProcessEventBus()),
        scheduler=OutboxOnlyScheduler(),
        cursor_store=InMemoryCursorStore(),
        settings=Settings(),
    )


def _create_pipeline(session: Session, name: str = "Support", sla_minutes: int = 60, **stage_a: object) -> PipelineRead:
    dto = PipelineCreate(
        name=name,
        entity_type="ticket",
        stages=[
            {"name": "A", "position": 1, "sla_minutes": sla_minutes, **stage_a},
            {"name": "B", "position": 2},
        ],
        transitions=[{"from_stage": "A", "to_stage": "B"}],
    )
    return PipelineDefinitionService().create_pipeline(session, TENANT, "admin", dto)


def _stage_ids(pipeline: PipelineRead) -> dict[str, uuid.UUID]:
    return {stage.name: stage.id for stage in pipeline.stages}


def test_breached_clock_escalates_to_owner_manager(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(db_session)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(61)
    report = components.sla_monitor.sweep()

    clocks = components.store.list_clocks(TENANT, entered.entity.id)
    assert report.breached_clock_ids == [clocks[0].id]
    assert clocks[0].status == "breached"
    assert clocks[0].breached_at is not None

    escalations = components.store.list_escalations(TENANT, entered.entity.id)
    assert len(escalations) == 1
    assert report.escalation_ids == [escalations[0].id]
    assert escalations[0].level == 1
    assert escalations[0].from_owner_id == "owner-1"
    assert escalations[0].to_owner_id == "manager-1"
    assert escalations[0].reason == "sla_breach"
    assert escalations[0].clock_id == clocks[0].id

    assert [(item.recipient_id, item.notification_type) for item in notifier.sent] == [
        ("manager-1", "crm.entity.escalated")
    ]
    envelope = components.publisher.published[-1]
    assert envelope["event_type"] == ENTITY_ESCALATED
    assert envelope["payload"]["level"] == 1
    assert envelope["payload"]["to_owner_id"] == "manager-1"
    assert any(entry["action"] == "entity.escalated" for entry in audit.audit_entries)


def test_clock_not_yet_due_is_left_alone(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(59)
    report = components.sla_monitor.sweep()

    assert report.breached_clock_ids == []
    assert [item.status for item in components.store.list_clocks(TENANT, entered.entity.id)] == ["active"]
    assert components.store.list_escalations(TENANT, entered.entity.id) == []


def test_repeated_sweeps_escalate_once(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(61)
    first = components.sla_monitor.sweep()
    clock.advance(5)
    second = components.sla_monitor.sweep()

    assert len(first.breached_clock_ids) == 1
    assert second.breached_clock_ids == []
    assert second.escalation_ids == []
    assert len(components.store.list_escalations(TENANT, entered.entity.id)) == 1


def test_stage_exit_before_deadline_prevents_escalation(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session)
    stages = _stage_ids(pipeline)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(30)
    components.engine.transition(TENANT, entered.entity.id, stages["B"])
    clock.advance(31)
    report = components.sla_monitor.sweep()

    assert report.breached_clock_ids == []
    clocks = components.store.list_clocks(TENANT, entered.entity.id)
    assert [item.status for item in clocks] == ["resolved"]
    assert clocks[0].resolved_at.replace(tzinfo=timezone.utc) == T0 + timedelta(minutes=30)
    assert components.store.list_escalations(TENANT, entered.entity.id) == []


def test_unresolved_escalation_target_is_still_recorded(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(db_session)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="nobody-knows-me")

    clock.advance(61)
    report = components.sla_monitor.sweep()

    escalations = components.store.list_escalations(TENANT, entered.entity.id)
    assert len(report.escalation_ids) == 1
    assert escalations[0].to_owner_id is None
    assert escalations[0].reason == "sla_breach:unresolved_target"
    assert notifier.sent == []


def test_escalation_strategy_from_stage_is_used(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(
        db_session,
        escalation_strategy={"strategy": "fixed", "owner_id": "team-lead"},
    )
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(61)
    components.sla_monitor.sweep()

    escalations = components.store.list_escalations(TENANT, entered.entity.id)
    assert escalations[0].to_owner_id == "team-lead"


def test_breaches_are_processed_in_deadline_order(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    slow = _create_pipeline(db_session, name="Slow", sla_minutes=90)
    fast = _create_pipeline(db_session, name="Fast", sla_minutes=30)
    late = components.engine.enter_pipeline(TENANT, slow.id, owner_id="owner-1")
    early = components.engine.enter_pipeline(TENANT, fast.id, owner_id="owner-2")

    clock.advance(100)
    report = components.sla_monitor.sweep()

    late_clock = components.store.list_clocks(TENANT, late.entity.id)[0]
    early_clock = components.store.list_clocks(TENANT, early.entity.id)[0]
    assert report.breached_clock_ids == [early_clock.id, late_clock.id]


def test_sweep_can_be_limited_to_one_tenant(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session)
    components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(61)
    other = components.sla_monitor.sweep(tenant_id="t2")
    own = components.sla_monitor.sweep(tenant_id=TENANT)

    assert other.breached_clock_ids == []
    assert len(own.breached_clock_ids) == 1


def test_repeat_timer_escalates_to_next_level(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session, escalation_repeat_minutes=30)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(61)
    components.sla_monitor.sweep()
    timers = components.store.list_timers(TENANT, entered.entity.id)
    assert [(timer.name, timer.timer_type, timer.status) for timer in timers] == [
        ("sla_breach_repeat", "escalation", "scheduled")
    ]

    clock.advance(31)
    report = components.sla_monitor.sweep()

    assert report.fired_timer_ids == [timers[0].id]
    escalations = components.store.list_escalations(TENANT, entered.entity.id)
    assert [item.level for item in escalations] == [1, 2]
    assert escalations[1].reason == "timer:sla_breach_repeat"
    assert [timer.status for timer in components.store.list_timers(TENANT, entered.entity.id)] == ["fired", "scheduled"]


def test_repeat_escalation_stops_at_max_level(
    db_session: Session,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    components = build_components(
        db_session,
        clock=clock,
        org_lookup=StaticOrgLookup({"owner-1": "manager-1"}),
        integrations={},
        notifier=notifier,
        scheduler=OutboxOnlyScheduler(),
        cursor_store=InMemoryCursorStore(),
        settings=Settings(escalation_max_level=2),
    )
    pipeline = _create_pipeline(db_session, escalation_repeat_minutes=10)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    for minutes in (61, 11, 11, 11):
        clock.advance(minutes)
        components.sla_monitor.sweep()

    assert [item.level for item in components.store.list_escalations(TENANT, entered.entity.id)] == [1, 2]
    assert all(timer.status == "fired" for timer in components.store.list_timers(TENANT, entered.entity.id))


def test_reminder_timer_notifies_owner(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(
        db_session,
        entry_actions=[{"type": "CREATE_TIMER", "name": "nudge", "timer_type": "reminder", "delay_minutes": 15}],
    )
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")

    clock.advance(16)
    report = components.sla_monitor.sweep()

    assert len(report.fired_timer_ids) == 1
    assert [(item.recipient_id, item.notification_type, item.payload) for item in notifier.sent] == [
        ("owner-1", "crm.entity.reminder", {"timer": "nudge"})
    ]
    assert [timer.status for timer in components.store.list_timers(TENANT, entered.entity.id)] == ["fired"]


def test_timer_for_a_stage_the_entity_left_is_stale(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(
        db_session,
        entry_actions=[{"type": "CREATE_TIMER", "name": "nudge", "timer_type": "reminder", "delay_minutes": 15}],
    )
    stages = _stage_ids(pipeline)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    components.engine.transition(TENANT, entered.entity.id, stages["B"])

    clock.advance(16)
    report = components.sla_monitor.sweep()

    assert len(report.fired_timer_ids) == 1
    assert notifier.sent == []


def test_stage_timeout_timer_moves_entity(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session, sla_minutes=240)
    stages = _stage_ids(pipeline)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    components.store.add_timer(
        CRMStageTimer(
            id=uuid.uuid4(),
            tenant_id=TENANT,
            entity_id=entered.entity.id,
            stage_id=stages["A"],
            name="auto_close_a",
            timer_type="stage_timeout",
            scheduled_at=T0 + timedelta(minutes=20),
            action_config={"target_stage_id": str(stages["B"])},
            status="scheduled",
        )
    )
    components.store.commit()

    clock.advance(21)
    report = components.sla_monitor.sweep()

    assert len(report.fired_timer_ids) == 1
    entity = components.store.load_entity(TENANT, entered.entity.id)
    assert entity.current_stage_id == stages["B"]
    assert components.publisher.published[-1]["payload"]["context"] == {"trigger": "timer", "timer": "auto_close_a"}


def test_escalation_level_conflict_is_retried(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(db_session)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    entity = components.store.load_entity(TENANT, entered.entity.id)
    first = components.escalations.escalate(TENANT, entity, "manual")

    stale_store = StaleLevelStore(db_session)
    manager = EscalationManager(
        stale_store,
        components.resolver,
        clock,
        components.publisher,
        OutboxOnlyScheduler(),
        notifier,
    )
    second = manager.escalate(TENANT, components.store.load_entity(TENANT, entered.entity.id), "manual")

    assert first.level == 1
    assert second.level == 2
    assert stale_store.lookups == 2
    assert [item.level for item in components.store.list_escalations(TENANT, entered.entity.id)] == [1, 2]


def test_sweep_and_transition_lock_entity_before_clock(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    notifier: RecordingNotificationSender,
) -> None:
    pipeline = _create_pipeline(db_session)
    stages = _stage_ids(pipeline)
    breached = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    moved = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-2")
    store = LockOrderStore(db_session)
    engine = PipelineEngine(store, components.executor, clock, components.publisher, OutboxOnlyScheduler(), settings=Settings())
    monitor = SlaMonitor(store, components.escalations, clock, notifier, engine=engine, settings=Settings())

    engine.transition(TENANT, moved.entity.id, stages["B"])
    transition_calls = list(store.calls)
    store.calls.clear()
    clock.advance(61)
    report = monitor.sweep()

    assert transition_calls == ["lock_entity", "update_clock"]
    assert store.calls[:2] == ["lock_entity", "update_clock"]
    assert report.breached_clock_ids == [components.store.list_clocks(TENANT, breached.entity.id)[0].id]


def test_sweep_losing_to_a_transition_is_a_no_op(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    pipeline = _create_pipeline(db_session)
    stages = _stage_ids(pipeline)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    clock.advance(61)
    stale = components.store.due_clocks(clock.now(), 10)
    db_session.rollback()

    moved = components.engine.transition(TENANT, entered.entity.id, stages["B"])
    monkeypatch.setattr(components.store, "due_clocks", lambda *args, **kwargs: stale)
    report = components.sla_monitor.sweep()

    assert moved.ok
    assert report.breached_clock_ids == []
    assert report.failed_clock_ids == []
    assert report.skipped == 1
    assert [item.status for item in components.store.list_clocks(TENANT, entered.entity.id)] == ["resolved"]
    assert components.store.list_escalations(TENANT, entered.entity.id) == []


def test_transition_after_a_breach_keeps_the_breached_clock(
    db_session: Session,
    components: PipelineComponents,
    clock: FrozenClock,
) -> None:
    pipeline = _create_pipeline(db_session)
    stages = _stage_ids(pipeline)
    entered = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    clock.advance(61)
    components.sla_monitor.sweep()

    moved = components.engine.transition(TENANT, entered.entity.id, stages["B"])

    assert moved.ok
    assert [item.status for item in components.store.list_clocks(TENANT, entered.entity.id)] == ["breached"]
    assert len(components.store.list_escalations(TENANT, entered.entity.id)) == 1
