"""SQLModel entities for the delivery engine."""

from app.models.delivery_attempt import AttemptOutcome, DeliveryAttempt
from app.models.job import Job, JobStatus, Lane
from app.models.notification import (
    Notification,
    NotificationChannel,
    NotificationPreference,
    NotificationTemplate,
)
from app.models.recipient import Recipient
from app.models.webhook import WebhookRegistration

__all__ = [
    "AttemptOutcome",
    "DeliveryAttempt",
    "Job",
    "JobStatus",
    "Lane",
    "Notification",
    "NotificationChannel",
    "NotificationPreference",
    "NotificationTemplate",
    "Recipient",
    "WebhookRegistration",
]
