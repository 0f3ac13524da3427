from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_engine.context import bound_context, reset_transition_depth, set_transition_depth
from pipeline_engine.core.config import get_settings
from pipeline_engine.core.database import Base, get_db
from pipeline_engine.logging import JsonLogFormatter, PipelineContextFilter
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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


def _create_pipeline(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/pipelines",
        json={
            "name": "Log Pipeline",
            "entity_type": "lead",
            "stages": [{"name": "Open", "position": 1}, {"name": "Won", "position": 2}],
            "transitions": [{"from_stage": "Open", "to_stage": "Won"}],
        },
        headers={**HEADERS, "X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    entity_id = uuid.uuid4()
    response = client.get(f"/api/crm/entities/{entity_id}", headers={**HEADERS, "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "pipeline_engine.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/entities/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "tenant_id", None) == "t1"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_transition_logs_carry_stage_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    pipeline = _create_pipeline(client, "abc-123")
    stages = {stage["name"]: stage["id"] for stage in pipeline["stages"]}
    entered = client.post("/api/crm/entities", json={"pipeline_id": pipeline["id"]}, headers=HEADERS)
    entity_id = entered.json()["entity"]["id"]

    moved = client.post(
        f"/api/crm/entities/{entity_id}/transition",
        json={"target_stage_id": stages["Won"]},
        headers={**HEADERS, "X-Correlation-Id": "abc-123"},
    )
    assert moved.status_code == 200
    rejected = client.post(
        f"/api/crm/entities/{entity_id}/transition",
        json={"target_stage_id": stages["Open"]},
        headers={**HEADERS, "X-Correlation-Id": "abc-456"},
    )
    assert rejected.status_code == 409

    engine_records = [record for record in caplog.records if record.name == "pipeline_engine.crm.engine"]
    assert any(
        record.getMessage() == "pipeline.transition.completed"
        and getattr(record, "entity_id", None) == entity_id
        and getattr(record, "from_stage_id", None) == stages["Open"]
        and getattr(record, "to_stage_id", None) == stages["Won"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in engine_records
    )
    assert any(
        record.getMessage() == "pipeline.transition.rejected"
        and getattr(record, "reason", None) == "transition_not_allowed"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in engine_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "pipeline_engine.crm.webhooks",
            "levelname": "WARNING",
            "msg": "webhook.delivery.failed",
            "endpoint_id": "endpoint-1",
            "attempt": 5,
            "error": "x" * 800,
            "secret_token": "do-not-log",
            "correlation_id": "corr-9",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "webhook.delivery.failed"
    assert payload["correlation_id"] == "corr-9"
    assert payload["fields"]["endpoint_id"] == "endpoint-1"
    assert payload["fields"]["attempt"] == 5
    assert len(payload["fields"]["error"]) == 500
    assert "secret_token" not in payload["fields"]


def test_context_filter_fills_tenant_and_depth_from_bound_context() -> None:
    record = logging.makeLogRecord({"name": "pipeline_engine.crm.sla", "msg": "pipeline.sla.breached"})

    with bound_context(correlation_id="sweep-1", tenant_id="t9"):
        token = set_transition_depth(2)
        try:
            assert PipelineContextFilter().filter(record)
        finally:
            reset_transition_depth(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["correlation_id"] == "sweep-1"
    assert payload["tenant_id"] == "t9"
    assert payload["fields"]["depth"] == 2


def test_oversized_correlation_header_is_truncated(client: TestClient) -> None:
    response = client.get("/api/crm/pipelines", headers={**HEADERS, "X-Correlation-Id": "c" * 300})

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "c" * 128
