from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_engine.core.celery_app import celery_app
from pipeline_engine.core.config import get_settings
from pipeline_engine.core.database import Base
from pipeline_engine.crm import tasks
from pipeline_engine.crm.contracts import StaticOrgLookup
from pipeline_engine.crm.definitions import PipelineDefinitionService
from pipeline_engine.crm.events import ENTITY_ESCALATED
from pipeline_engine.crm.factory import build_components
from pipeline_engine.crm.models import CRMPipelineEvent
from pipeline_engine.crm.schemas import PipelineCreate
from pipeline_engine.crm.webhooks import OutboxOnlyScheduler

TENANT = "t1"


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(tasks, "SessionLocal", factory)
    yield factory
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("WEBHOOK_DELIVERY_MODE", "outbox")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _enter_overdue_entity(session: Session) -> uuid.UUID:
    dto = PipelineCreate(
        name="Support",
        entity_type="ticket",
        stages=[{"name": "Triage", "position": 1, "sla_minutes": 60}, {"name": "Done", "position": 2}],
        transitions=[{"from_stage": "Triage", "to_stage": "Done"}],
    )
    pipeline = PipelineDefinitionService().create_pipeline(session, TENANT, "admin", dto)
    components = build_components(
        session,
        clock=FrozenClock(datetime.now(timezone.utc) - timedelta(hours=2)),
        org_lookup=StaticOrgLookup({}),
        integrations={},
        scheduler=OutboxOnlyScheduler(),
    )
    result = components.engine.enter_pipeline(TENANT, pipeline.id, owner_id="owner-1")
    assert result.ok
    return result.event_id


def test_beat_schedule_points_at_registered_tasks() -> None:
    schedule = celery_app.conf.beat_schedule

    assert schedule["crm-sla-sweep"]["task"] == tasks.sla_sweep_task.name
    assert schedule["crm-outbox-relay"]["task"] == tasks.relay_outbox_task.name
    assert tasks.deliver_event_task.name in celery_app.tasks


def test_sla_sweep_task_breaches_overdue_clock(session_factory: sessionmaker) -> None:
    session = session_factory()
    try:
        _enter_overdue_entity(session)
    finally:
        session.close()

    summary = tasks.sla_sweep_task()

    assert summary["breached"] == 1
    assert summary["escalations"] == 1
    assert summary["failed"] == 0

    check = session_factory()
    try:
        escalated = check.scalars(
            select(CRMPipelineEvent).where(CRMPipelineEvent.event_type == ENTITY_ESCALATED)
        ).all()
        assert len(escalated) == 1
        assert (escalated[0].correlation_id or "").startswith("sla-sweep-")
    finally:
        check.close()

    again = tasks.sla_sweep_task(tenant_id=TENANT)
    assert again["breached"] == 0


def test_relay_and_deliver_tasks_drain_outbox(session_factory: sessionmaker) -> None:
    session = session_factory()
    try:
        event_id = _enter_overdue_entity(session)
    finally:
        session.close()

    relayed = tasks.relay_outbox_task(tenant_id=TENANT)
    assert relayed == {"scheduled": 1}

    delivered = tasks.deliver_event_task(TENANT, str(event_id))
    assert delivered == {"event_id": str(event_id), "deliveries": []}

    check = session_factory()
    try:
        row = check.get(CRMPipelineEvent, event_id)
        assert row is not None
        assert row.dispatched_at is not None
    finally:
        check.close()

    assert tasks.relay_outbox_task() == {"scheduled": 0}
