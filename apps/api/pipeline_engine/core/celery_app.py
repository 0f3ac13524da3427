from celery import Celery

from pipeline_engine.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "pipeline_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["pipeline_engine.crm.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "crm-sla-sweep": {
            "task": "pipeline_engine.crm.sla_sweep",
            "schedule": float(settings.sla_sweep_interval_seconds),
        },
        "crm-outbox-relay": {
            "task": "pipeline_engine.crm.relay_outbox",
            "schedule": float(settings.outbox_relay_interval_seconds),
        },
    },
)
