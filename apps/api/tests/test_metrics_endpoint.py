from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_engine.core.config import get_settings
from pipeline_engine.core.database import Base, get_db
from pipeline_engine.main import app

HEADERS = {"X-Tenant-Id": "t1"}


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("WEBHOOK_DELIVERY_MODE", "outbox")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_pipeline_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post(
        "/api/crm/pipelines",
        json={
            "name": "Metrics Pipeline",
            "entity_type": "lead",
            "stages": [{"name": "Open", "position": 1, "sla_minutes": 30}, {"name": "Won", "position": 2}],
            "transitions": [{"from_stage": "Open", "to_stage": "Won"}],
        },
        headers=HEADERS,
    )
    assert pipeline.status_code == 201
    stages = {stage["name"]: stage["id"] for stage in pipeline.json()["stages"]}

    entered = client.post("/api/crm/entities", json={"pipeline_id": pipeline.json()["id"]}, headers=HEADERS)
    assert entered.status_code == 201

    moved = client.post(
        f"/api/crm/entities/{entered.json()['entity']['id']}/transition",
        json={"target_stage_id": stages["Won"]},
        headers=HEADERS,
    )
    assert moved.status_code == 200

    sweep = client.post("/api/crm/sla/sweep", headers=HEADERS)
    assert sweep.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_transitions_total" in body
    assert "pipeline_transition_duration_seconds" in body
    assert "sla_sweep_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/entities/{id}/transition"' in body
    assert 'outcome="completed"' in body


def test_metrics_endpoint_can_be_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
