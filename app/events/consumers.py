"""In-process subscribers for queue lifecycle events.

Event Flow:
    QueueWorker -> EventBus -> Subscribers
                                  |
                      [LoggingSubscriber, NotificationStatusSubscriber]

The bus is created and wired explicitly by whoever runs the workers;
there is no module-level instance.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from sqlalchemy import update
from sqlmodel import Session

from app.events.types import QueueEvent, QueueEventType
from app.models.notification import Notification, NotificationStatus

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Subscriber Base Class
# -----------------------------------------------------------------------------


class QueueEventSubscriber(ABC):
    """Abstract base class for queue event subscribers.

    Subscribers must be idempotent: the same transition may be observed
    again after a lease is reclaimed.
    """

    @abstractmethod
    def handles(self, event_type: QueueEventType) -> bool:
        """Check if this subscriber handles the given event type."""
        pass

    @abstractmethod
    def process(self, session: Session, event: QueueEvent) -> None:
        """Process an event.

        Args:
            session: Database session of the publishing worker
            event: The lifecycle event
        """
        pass


# -----------------------------------------------------------------------------
# Logging Subscriber
# -----------------------------------------------------------------------------


class LoggingSubscriber(QueueEventSubscriber):
    """Logs every lifecycle event; failures and stalls at warning level."""

    WARNING_EVENTS = {QueueEventType.JOB_FAILED, QueueEventType.JOB_STALLED}

    def handles(self, event_type: QueueEventType) -> bool:
        return True

    def process(self, session: Session, event: QueueEvent) -> None:
        level = logging.WARNING if event.event_type in self.WARNING_EVENTS else logging.INFO
        logger.log(level, f"Queue event {event.event_type.value}", extra=event.to_dict())


# -----------------------------------------------------------------------------
# Notification Status Subscriber
# -----------------------------------------------------------------------------


class NotificationStatusSubscriber(QueueEventSubscriber):
    """Rolls channel job outcomes up into the notification status.

    pending -> sent   once any channel delivers
    pending -> failed when a channel fails terminally before any delivery

    A later success on another channel still upgrades failed to sent.
    """

    def handles(self, event_type: QueueEventType) -> bool:
        return event_type in (QueueEventType.JOB_COMPLETED, QueueEventType.JOB_FAILED)

    def process(self, session: Session, event: QueueEvent) -> None:
        if event.notification_id is None:
            return

        # Guarded updates: channel jobs of one notification finish concurrently
        statement = update(Notification).where(Notification.id == event.notification_id)
        if event.event_type == QueueEventType.JOB_COMPLETED:
            status = NotificationStatus.SENT
            statement = statement.where(Notification.status != NotificationStatus.SENT).values(
                status=status, error=None
            )
        else:
            status = NotificationStatus.FAILED
            statement = statement.where(Notification.status == NotificationStatus.PENDING).values(
                status=status, error=(event.error or "Delivery failed")[:500]
            )

        result = session.execute(statement.execution_options(synchronize_session="fetch"))
        session.commit()

        if result.rowcount != 1:
            logger.debug(
                "Notification status unchanged",
                extra={"notification_id": str(event.notification_id)},
            )
            return

        logger.info(
            "Notification status updated",
            extra={
                "notification_id": str(event.notification_id),
                "status": status.value,
                "channel": event.channel,
            },
        )


# -----------------------------------------------------------------------------
# Event Bus - Routes events to subscribers
# -----------------------------------------------------------------------------


class EventBus:
    """Routes queue events to registered subscribers.

    Errors in one subscriber are logged and do not reach other subscribers
    or the publishing worker.
    """

    def __init__(self, subscribers: Iterable[QueueEventSubscriber] = ()) -> None:
        self._subscribers: list[QueueEventSubscriber] = list(subscribers)

    @classmethod
    def with_defaults(cls) -> "EventBus":
        """Bus with the built-in subscribers registered."""
        return cls([LoggingSubscriber(), NotificationStatusSubscriber()])

    @property
    def subscribers(self) -> list[QueueEventSubscriber]:
        return list(self._subscribers)

    def register(self, subscriber: QueueEventSubscriber) -> None:
        """Register an additional subscriber."""
        self._subscribers.append(subscriber)

    def publish(self, session: Session, event: QueueEvent) -> int:
        """Deliver an event to every interested subscriber.

        Returns:
            Number of subscribers that processed the event without error
        """
        processed = 0
        for subscriber in self._subscribers:
            if not subscriber.handles(event.event_type):
                continue

            try:
                subscriber.process(session, event)
                processed += 1
            except Exception as e:
                session.rollback()
                logger.error(
                    "Subscriber processing failed",
                    extra={
                        "subscriber": subscriber.__class__.__name__,
                        "event_id": str(event.event_id),
                        "event_type": event.event_type.value,
                        "error": str(e),
                    },
                    exc_info=True,
                )
        return processed
