from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from pipeline_engine.core.config import get_settings
from pipeline_engine.crm.api import (
    definitions_router,
    entities_router,
    pipelines_router,
    sla_router,
    webhooks_router,
)
from pipeline_engine.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(pipelines_router)
router.include_router(definitions_router)
router.include_router(entities_router)
router.include_router(webhooks_router)
router.include_router(sla_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
