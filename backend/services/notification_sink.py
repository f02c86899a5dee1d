"""Notification Sink - write-only outbox consumed by an external dispatcher.

Enqueue is fire-and-forget from the caller's point of view: a failed write is
logged and never propagates into payment or match processing. Passing an
idempotency_key makes the enqueue exactly-once (unique index on
notifications.idempotency_key); a duplicate key is reported as "not enqueued".
"""
import logging
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationSink:
    async def enqueue(
        self,
        recipient: str,
        notification_type: NotificationType,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """Queue a notification. Returns True only when a new record was written."""
        notification = Notification(
            recipient=recipient,
            type=notification_type,
            payload=payload or {},
            idempotency_key=idempotency_key,
        )
        doc = notification.model_dump()
        doc["type"] = notification_type.value
        if idempotency_key is None:
            # Sparse unique index: omit the field rather than store null
            doc.pop("idempotency_key")
        try:
            db = database.get_db()
            await db.notifications.insert_one(doc)
        except DuplicateKeyError:
            logger.info(
                "NOTIFICATION_DUPLICATE_SKIPPED recipient=%s type=%s idempotency_key=%s",
                recipient, notification_type.value, idempotency_key,
            )
            return False
        except Exception as e:
            logger.error(
                "NOTIFICATION_ENQUEUE_FAILED recipient=%s type=%s error=%s",
                recipient, notification_type.value, e,
            )
            return False
        logger.info(
            "NOTIFICATION_ENQUEUED recipient=%s type=%s id=%s",
            recipient, notification_type.value, notification.notification_id,
        )
        return True


notification_sink = NotificationSink()
