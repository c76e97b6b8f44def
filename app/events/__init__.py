"""Queue lifecycle events.

Components:
- types.py: QueueEventType and the QueueEvent schema
- consumers.py: Subscribers and the EventBus that routes to them
"""

from app.events.types import QueueEvent, QueueEventType
from app.events.consumers import (
    EventBus,
    LoggingSubscriber,
    NotificationStatusSubscriber,
    QueueEventSubscriber,
)

__all__ = [
    # Types
    "QueueEvent",
    "QueueEventType",
    # Subscribers
    "QueueEventSubscriber",
    "LoggingSubscriber",
    "NotificationStatusSubscriber",
    "EventBus",
]
