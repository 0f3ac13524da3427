from __future__ import annotations

import uuid

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from pipeline_engine import audit
from pipeline_engine.crm.errors import NotFoundError, PipelineNotFoundError
from pipeline_engine.crm.models import (
    CRMEntityDefinition,
    CRMPipeline,
    CRMPipelineStage,
    CRMStageTransition,
    CRMWebhookEndpoint,
)
from pipeline_engine.crm.schemas import (
    EntityDefinitionCreate,
    EntityDefinitionRead,
    PipelineCreate,
    PipelineRead,
    WebhookEndpointCreate,
    WebhookEndpointRead,
)


class PipelineDefinitionService:
    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, tenant_id: str, actor_id: str, dto: PipelineCreate) -> PipelineRead:
        pipeline = CRMPipeline(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            name=dto.name.strip(),
            entity_type=dto.entity_type,
            is_active=dto.is_active,
        )
        session.add(pipeline)

        stage_ids = {stage.name: uuid.uuid4() for stage in dto.stages}
        for stage in dto.stages:
            session.add(
                CRMPipelineStage(
                    id=stage_ids[stage.name],
                    pipeline_id=pipeline.id,
                    name=stage.name,
                    position=stage.position,
                    entry_actions=stage.entry_actions,
                    exit_actions=stage.exit_actions,
                    sla_minutes=stage.sla_minutes,
                    escalation_strategy=stage.escalation_strategy,
                    escalation_repeat_minutes=stage.escalation_repeat_minutes,
                    auto_transitions=[
                        {"target_stage_id": str(stage_ids[auto.target_stage]), "condition": auto.condition}
                        for auto in stage.auto_transitions
                    ],
                    is_active=stage.is_active,
                )
            )
        session.flush()

        for rule in dto.transitions:
            session.add(
                CRMStageTransition(
                    id=uuid.uuid4(),
                    pipeline_id=pipeline.id,
                    from_stage_id=stage_ids[rule.from_stage],
                    to_stage_id=stage_ids[rule.to_stage],
                    conditions=rule.conditions,
                )
            )
        session.flush()

        audit.record(
            actor_id=actor_id,
            tenant_id=tenant_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={
                "name": pipeline.name,
                "entity_type": pipeline.entity_type,
                "stages": [stage.name for stage in dto.stages],
                "transitions": [[rule.from_stage, rule.to_stage] for rule in dto.transitions],
            },
        )
        session.commit()
        return self.get_pipeline(session, tenant_id, pipeline.id)

    def get_pipeline(self, session: Session, tenant_id: str, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = session.scalar(
            select(CRMPipeline)
            .where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.tenant_id == tenant_id))
            .options(selectinload(CRMPipeline.stages), selectinload(CRMPipeline.transitions))
        )
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return PipelineRead.model_validate(pipeline)

    def list_pipelines(self, session: Session, tenant_id: str, entity_type: str | None = None) -> list[PipelineRead]:
        stmt = (
            select(CRMPipeline)
            .where(CRMPipeline.tenant_id == tenant_id)
            .options(selectinload(CRMPipeline.stages), selectinload(CRMPipeline.transitions))
            .order_by(CRMPipeline.created_at.asc(), CRMPipeline.id.asc())
        )
        if entity_type is not None:
            stmt = stmt.where(CRMPipeline.entity_type == entity_type)
        return [PipelineRead.model_validate(pipeline) for pipeline in session.scalars(stmt)]

    def create_definition(
        self,
        session: Session,
        tenant_id: str,
        actor_id: str,
        dto: EntityDefinitionCreate,
    ) -> EntityDefinitionRead:
        definition = CRMEntityDefinition(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            name=dto.name.strip(),
            entity_type=dto.entity_type,
            schema_definition={"required": list(dict.fromkeys(dto.required_fields))},
            is_active=dto.is_active,
        )
        session.add(definition)
        session.flush()
        audit.record(
            actor_id=actor_id,
            tenant_id=tenant_id,
            entity_type="crm.entity_definition",
            entity_id=str(definition.id),
            action="create",
            before=None,
            after={"name": definition.name, "entity_type": definition.entity_type, **definition.schema_definition},
        )
        session.commit()
        return EntityDefinitionRead.model_validate(definition)

    def register_endpoint(
        self,
        session: Session,
        tenant_id: str,
        actor_id: str,
        dto: WebhookEndpointCreate,
    ) -> WebhookEndpointRead:
        endpoint = CRMWebhookEndpoint(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            url=dto.url,
            event_types=list(dict.fromkeys(dto.event_types)),
            is_active=dto.is_active,
            max_attempts=dto.max_attempts,
            timeout_seconds=dto.timeout_seconds,
        )
        session.add(endpoint)
        session.flush()
        audit.record(
            actor_id=actor_id,
            tenant_id=tenant_id,
            entity_type="crm.webhook_endpoint",
            entity_id=str(endpoint.id),
            action="create",
            before=None,
            after={"url": endpoint.url, "event_types": endpoint.event_types},
        )
        session.commit()
        return WebhookEndpointRead.model_validate(endpoint)

    def list_endpoints(self, session: Session, tenant_id: str) -> list[WebhookEndpointRead]:
        endpoints = session.scalars(
            select(CRMWebhookEndpoint)
            .where(CRMWebhookEndpoint.tenant_id == tenant_id)
            .order_by(CRMWebhookEndpoint.created_at.asc(), CRMWebhookEndpoint.id.asc())
        )
        return [WebhookEndpointRead.model_validate(endpoint) for endpoint in endpoints]

    def deactivate_endpoint(
        self,
        session: Session,
        tenant_id: str,
        actor_id: str,
        endpoint_id: uuid.UUID,
    ) -> WebhookEndpointRead:
        endpoint = session.scalar(
            select(CRMWebhookEndpoint).where(
                and_(CRMWebhookEndpoint.id == endpoint_id, CRMWebhookEndpoint.tenant_id == tenant_id)
            )
        )
        if endpoint is None:
            raise NotFoundError(f"webhook endpoint not found: {endpoint_id}", details={"endpoint_id": str(endpoint_id)})
        before = {"is_active": endpoint.is_active}
        endpoint.is_active = False
        session.flush()
        audit.record(
            actor_id=actor_id,
            tenant_id=tenant_id,
            entity_type="crm.webhook_endpoint",
            entity_id=str(endpoint.id),
            action="deactivate",
            before=before,
            after={"is_active": False},
        )
        session.commit()
        return WebhookEndpointRead.model_validate(endpoint)
