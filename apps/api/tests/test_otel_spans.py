from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from pipeline_engine.core.config import get_settings
from pipeline_engine.core.database import Base, get_db
from pipeline_engine.main import app
from pipeline_engine.otel import setup_inmemory_otel

HEADERS = {"X-Tenant-Id": "t1"}


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current


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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def clock() -> Generator[FrozenClock, None, None]:
    frozen = FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    previous = app.state.clock
    app.state.clock = frozen
    yield frozen
    app.state.clock = previous


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_pipeline(client: TestClient) -> dict:
    response = client.post(
        "/api/crm/pipelines",
        json={
            "name": "OTel Pipeline",
            "entity_type": "lead",
            "stages": [{"name": "Open", "position": 1, "sla_minutes": 30}, {"name": "Won", "position": 2}],
            "transitions": [{"from_stage": "Open", "to_stage": "Won"}],
        },
        headers=HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/crm/pipelines", headers={**HEADERS, "X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("tenant_id") == "t1" for span in spans)


def test_transition_span_records_entity_and_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    pipeline = _create_pipeline(client)
    stages = {stage["name"]: stage["id"] for stage in pipeline["stages"]}
    entered = client.post("/api/crm/entities", json={"pipeline_id": pipeline["id"]}, headers=HEADERS)
    entity_id = entered.json()["entity"]["id"]

    moved = client.post(
        f"/api/crm/entities/{entity_id}/transition",
        json={"target_stage_id": stages["Won"]},
        headers={**HEADERS, "X-Correlation-Id": "otel-transition-1"},
    )
    assert moved.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert any(span.name == "pipeline.enter" and span.attributes.get("entity_id") == entity_id for span in spans)
    transition_spans = [span for span in spans if span.name == "pipeline.transition"]
    assert transition_spans
    assert any(
        span.attributes.get("entity_id") == entity_id
        and span.attributes.get("to_stage_id") == stages["Won"]
        and span.attributes.get("outcome") == "completed"
        for span in transition_spans
    )


def test_sla_sweep_produces_sweep_and_escalation_spans(
    client: TestClient,
    clock: FrozenClock,
    span_exporter: InMemorySpanExporter,
) -> None:
    pipeline = _create_pipeline(client)
    entered = client.post(
        "/api/crm/entities",
        json={"pipeline_id": pipeline["id"], "owner_id": "owner-1"},
        headers=HEADERS,
    )
    assert entered.status_code == 201

    clock.current = clock.current + timedelta(minutes=31)
    sweep = client.post("/api/crm/sla/sweep", headers=HEADERS)
    assert sweep.status_code == 200

    spans = span_exporter.get_finished_spans()
    sweep_spans = [span for span in spans if span.name == "pipeline.sla.sweep"]
    assert sweep_spans
    assert sweep_spans[-1].attributes.get("breached") == 1
    assert any(
        span.name == "pipeline.escalate" and span.attributes.get("level") == 1 and span.attributes.get("reason") == "sla_breach"
        for span in spans
    )
