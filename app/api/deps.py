"""API dependencies for dependency injection."""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session

from app.config import Settings, get_settings
from app.db.session import get_session
from app.services.dispatch import DeliveryEngine
from app.services.notifications import NotificationService
from app.services.queue import QueueService
from app.services.tracker import DeliveryTracker
from app.services.webhooks import WebhookService


def get_db_session() -> Generator[Session, None, None]:
    """Get database session dependency."""
    yield from get_session()


DBSession = Annotated[Session, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_queue_service(session: DBSession, settings: AppSettings) -> QueueService:
    return QueueService(session, settings)


Queue = Annotated[QueueService, Depends(get_queue_service)]


def get_delivery_engine(
    session: DBSession,
    queue: Queue,
    settings: AppSettings,
) -> DeliveryEngine:
    return DeliveryEngine(session, queue=queue, settings=settings)


Engine = Annotated[DeliveryEngine, Depends(get_delivery_engine)]


def get_webhook_service(session: DBSession, settings: AppSettings) -> WebhookService:
    return WebhookService(session, settings)


Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]


def get_notification_service(session: DBSession) -> NotificationService:
    return NotificationService(session)


Notifications = Annotated[NotificationService, Depends(get_notification_service)]


def get_tracker(session: DBSession) -> DeliveryTracker:
    return DeliveryTracker(session)


Tracker = Annotated[DeliveryTracker, Depends(get_tracker)]
