from __future__ import annotations

import logging
import uuid

from pipeline_engine.crm.contracts import Notification
from pipeline_engine.crm.events import serialize_value
from pipeline_engine.crm.models import CRMNotificationIntent
from pipeline_engine.crm.repositories import SqlPipelineStore

logger = logging.getLogger("pipeline_engine.crm.notifications")


class IntentNotificationSender:
    """Queues notifications as ``crm_notification_intent`` rows for a downstream sender."""

    def __init__(self, store: SqlPipelineStore) -> None:
        self.store = store

    def send(self, notification: Notification) -> None:
        intent = CRMNotificationIntent(
            id=uuid.uuid4(),
            tenant_id=notification.tenant_id,
            entity_id=notification.entity_id,
            notification_type=notification.notification_type,
            recipient_id=notification.recipient_id,
            payload=serialize_value(dict(notification.payload or {})),
            status="Queued",
        )
        try:
            self.store.add_notification_intent(intent)
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info(
            "pipeline.notification.queued",
            extra={
                "tenant_id": notification.tenant_id,
                "entity_id": str(notification.entity_id),
                "event_type": notification.notification_type,
            },
        )


class RecordingNotificationSender:
    """Keeps sent notifications in memory."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)
