from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from pipeline_engine import audit
from pipeline_engine.context import get_correlation_id
from pipeline_engine.core.database import get_db
from pipeline_engine.core.events import InProcessEventBus
from pipeline_engine.crm.definitions import PipelineDefinitionService
from pipeline_engine.crm.engine import TransitionResult
from pipeline_engine.crm.errors import (
    ConfigurationError,
    DefinitionValidationError,
    NotFoundError,
    PipelineError,
)
from pipeline_engine.crm.events import BusEventPublisher
from pipeline_engine.crm.factory import PipelineComponents, build_components
from pipeline_engine.crm.schemas import (
    AuditEntryRead,
    AvailableTransitionRead,
    CloseRequest,
    DeliveryAttemptRead,
    EnterPipelineRequest,
    EntityDefinitionCreate,
    EntityDefinitionRead,
    EntityRead,
    EscalationRead,
    PipelineCreate,
    PipelineRead,
    SlaClockRead,
    SweepReportRead,
    TransitionRequest,
    TransitionResultRead,
    WebhookEndpointCreate,
    WebhookEndpointRead,
)

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
definitions_router = APIRouter(prefix="/api/crm", tags=["crm.entity_definitions"])
entities_router = APIRouter(prefix="/api/crm", tags=["crm.entities"])
webhooks_router = APIRouter(prefix="/api/crm", tags=["crm.webhooks"])
sla_router = APIRouter(prefix="/api/crm", tags=["crm.sla"])

definition_service = PipelineDefinitionService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _error_from(request: Request, exc: HTTPException | PipelineError) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return error_response(
            request,
            status_code=exc.status_code,
            code="http_error",
            message=str(exc.detail),
        )
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ConfigurationError, DefinitionValidationError)):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_409_CONFLICT
    return error_response(request, status_code=status_code, code=exc.code, message=exc.message, details=exc.details)


def _rejection_response(request: Request, result: TransitionResult) -> JSONResponse:
    error = result.error
    details: dict[str, Any] = error.to_dict() if error is not None else {}
    details["entity_id"] = str(result.entity.id) if result.entity is not None else None
    return error_response(
        request,
        status_code=status.HTTP_409_CONFLICT,
        code=error.code if error is not None else "transition_rejected",
        message=error.message if error is not None else "transition rejected",
        details=details,
    )


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str | None:
    return x_tenant_id.strip() if x_tenant_id and x_tenant_id.strip() else None


def get_actor_id(request: Request) -> str:
    context = getattr(request.state, "context", None)
    return getattr(context, "actor_id", None) or request.headers.get("x-actor-id") or "system"


def require_tenant(tenant_id: str | None) -> str:
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-Tenant-Id header")
    return tenant_id


def get_components(request: Request, db: Session = Depends(get_db)) -> PipelineComponents:
    state = request.app.state
    bus = getattr(state, "event_bus", None) or InProcessEventBus()
    return build_components(
        db,
        clock=getattr(state, "clock", None),
        org_lookup=getattr(state, "org_lookup", None),
        http_sender=getattr(state, "http_sender", None),
        integrations=getattr(state, "integrations", None),
        publisher=BusEventPublisher(bus),
    )


def to_result_read(result: TransitionResult) -> TransitionResultRead:
    return TransitionResultRead(
        ok=result.ok,
        entity=EntityRead.model_validate(result.entity) if result.entity is not None else None,
        from_stage_id=result.from_stage_id,
        to_stage_id=result.to_stage_id,
        event_id=result.event_id,
        error=result.error.to_dict() if result.error is not None else None,
        auto_transitions=[to_result_read(item) for item in result.auto_transitions],
    )


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> PipelineRead | JSONResponse:
    try:
        return definition_service.create_pipeline(db, require_tenant(tenant_id), get_actor_id(request), dto)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    entity_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[PipelineRead] | JSONResponse:
    try:
        return definition_service.list_pipelines(db, require_tenant(tenant_id), entity_type=entity_type)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> PipelineRead | JSONResponse:
    try:
        return definition_service.get_pipeline(db, require_tenant(tenant_id), pipeline_id)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@definitions_router.post("/entity-definitions", response_model=EntityDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_entity_definition(
    request: Request,
    dto: EntityDefinitionCreate,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> EntityDefinitionRead | JSONResponse:
    try:
        return definition_service.create_definition(db, require_tenant(tenant_id), get_actor_id(request), dto)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@entities_router.post("/entities", response_model=TransitionResultRead, status_code=status.HTTP_201_CREATED)
def enter_pipeline(
    request: Request,
    dto: EnterPipelineRequest,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> TransitionResultRead | JSONResponse:
    try:
        result = components.engine.enter_pipeline(
            require_tenant(tenant_id),
            dto.pipeline_id,
            owner_id=dto.owner_id,
            data=dto.data,
            definition_id=dto.definition_id,
            context={**dto.context, "actor_id": get_actor_id(request)},
        )
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)
    if not result.ok:
        return _rejection_response(request, result)
    return to_result_read(result)


@entities_router.get("/entities/{entity_id}", response_model=EntityRead)
def get_entity(
    request: Request,
    entity_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> EntityRead | JSONResponse:
    try:
        entity = components.store.load_entity(require_tenant(tenant_id), entity_id)
        if entity is None:
            raise NotFoundError(f"entity not found: {entity_id}", details={"entity_id": str(entity_id)})
        return EntityRead.model_validate(entity)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@entities_router.post("/entities/{entity_id}/transition", response_model=TransitionResultRead)
def transition_entity(
    request: Request,
    entity_id: uuid.UUID,
    dto: TransitionRequest,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> TransitionResultRead | JSONResponse:
    try:
        result = components.engine.transition(
            require_tenant(tenant_id),
            entity_id,
            dto.target_stage_id,
            {**dto.context, "actor_id": get_actor_id(request)},
        )
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)
    if not result.ok:
        return _rejection_response(request, result)
    return to_result_read(result)


@entities_router.get("/entities/{entity_id}/available-transitions", response_model=list[AvailableTransitionRead])
def list_available_transitions(
    request: Request,
    entity_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[AvailableTransitionRead] | JSONResponse:
    try:
        stages = components.engine.available_transitions(require_tenant(tenant_id), entity_id)
        return [AvailableTransitionRead.model_validate(stage) for stage in stages]
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@entities_router.post("/entities/{entity_id}/close", response_model=TransitionResultRead)
def close_entity(
    request: Request,
    entity_id: uuid.UUID,
    dto: CloseRequest,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> TransitionResultRead | JSONResponse:
    try:
        result = components.engine.close(
            require_tenant(tenant_id),
            entity_id,
            dto.status,
            {**dto.context, "actor_id": get_actor_id(request)},
        )
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)
    if not result.ok:
        return _rejection_response(request, result)
    return to_result_read(result)


@entities_router.get("/entities/{entity_id}/escalations", response_model=list[EscalationRead])
def list_entity_escalations(
    request: Request,
    entity_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[EscalationRead] | JSONResponse:
    try:
        escalations = components.store.list_escalations(require_tenant(tenant_id), entity_id)
        return [EscalationRead.model_validate(item) for item in escalations]
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@entities_router.get("/entities/{entity_id}/history", response_model=list[AuditEntryRead])
def list_entity_history(
    request: Request,
    entity_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[AuditEntryRead] | JSONResponse:
    try:
        resolved_tenant = require_tenant(tenant_id)
        if components.store.load_entity(resolved_tenant, entity_id) is None:
            raise NotFoundError(f"entity not found: {entity_id}", details={"entity_id": str(entity_id)})
        entries = audit.history(resolved_tenant, "crm.entity", str(entity_id))
        return [AuditEntryRead.model_validate(entry) for entry in entries]
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@entities_router.get("/entities/{entity_id}/sla-clocks", response_model=list[SlaClockRead])
def list_entity_sla_clocks(
    request: Request,
    entity_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[SlaClockRead] | JSONResponse:
    try:
        clocks = components.store.list_clocks(require_tenant(tenant_id), entity_id)
        return [SlaClockRead.model_validate(item) for item in clocks]
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@webhooks_router.post("/webhook-endpoints", response_model=WebhookEndpointRead, status_code=status.HTTP_201_CREATED)
def register_webhook_endpoint(
    request: Request,
    dto: WebhookEndpointCreate,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> WebhookEndpointRead | JSONResponse:
    try:
        return definition_service.register_endpoint(db, require_tenant(tenant_id), get_actor_id(request), dto)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@webhooks_router.get("/webhook-endpoints", response_model=list[WebhookEndpointRead])
def list_webhook_endpoints(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[WebhookEndpointRead] | JSONResponse:
    try:
        return definition_service.list_endpoints(db, require_tenant(tenant_id))
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@webhooks_router.post("/webhook-endpoints/{endpoint_id}/deactivate", response_model=WebhookEndpointRead)
def deactivate_webhook_endpoint(
    request: Request,
    endpoint_id: uuid.UUID,
    db: Session = Depends(get_db),
    tenant_id: str | None = Depends(get_tenant_id),
) -> WebhookEndpointRead | JSONResponse:
    try:
        return definition_service.deactivate_endpoint(db, require_tenant(tenant_id), get_actor_id(request), endpoint_id)
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@webhooks_router.get("/events/{event_id}/attempts", response_model=list[DeliveryAttemptRead])
def list_delivery_attempts(
    request: Request,
    event_id: uuid.UUID,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> list[DeliveryAttemptRead] | JSONResponse:
    try:
        attempts = components.store.list_attempts(require_tenant(tenant_id), event_id)
        return [DeliveryAttemptRead.model_validate(item) for item in attempts]
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)


@sla_router.post("/sla/sweep", response_model=SweepReportRead)
def run_sla_sweep(
    request: Request,
    components: PipelineComponents = Depends(get_components),
    tenant_id: str | None = Depends(get_tenant_id),
) -> SweepReportRead | JSONResponse:
    try:
        report = components.sla_monitor.sweep(tenant_id=require_tenant(tenant_id))
    except (HTTPException, PipelineError) as exc:
        return _error_from(request, exc)
    return SweepReportRead(
        breached_clock_ids=report.breached_clock_ids,
        escalation_ids=report.escalation_ids,
        skipped=report.skipped,
        failed_clock_ids=report.failed_clock_ids,
        fired_timer_ids=report.fired_timer_ids,
    )
