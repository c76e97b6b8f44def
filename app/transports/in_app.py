"""In-app inbox transport."""

import logging
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlmodel import Session

from app.models.notification import Notification
from app.transports.base import DeliveryResult, DeliveryTarget

logger = logging.getLogger(__name__)


class InAppTransport:
    """Makes a notification visible in the recipient's inbox.

    Delivery is a database write, so re-running it is harmless: the first
    ``in_app_at`` timestamp is kept.
    """

    channel = "in_app"

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        notification_id = target.payload.get("notification_id")
        if not notification_id:
            return DeliveryResult.failed("Missing notification id", retryable=False)

        with self.session_factory() as session:
            notification = session.get(Notification, UUID(str(notification_id)))
            if notification is None:
                return DeliveryResult.failed(
                    f"Notification {notification_id} not found", retryable=False
                )
            if notification.in_app_at is None:
                notification.in_app_at = datetime.utcnow()
                session.add(notification)
                session.commit()

        logger.debug(
            "Notification placed in inbox",
            extra={"notification_id": str(notification_id), "user_id": str(target.recipient)},
        )
        return DeliveryResult.ok()
