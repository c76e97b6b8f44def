"""Request/response schemas for event dispatch and bulk retry."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlmodel import Field, SQLModel

from app.models.notification import NotificationChannel, NotificationPriority


class DispatchRequest(SQLModel):
    """An event to fan out to webhooks and notification channels."""

    event: str = Field(min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.NORMAL
    channels: list[NotificationChannel] | None = None
    user_ids: list[UUID] | None = None
    template: str | None = None
    delay_ms: int = Field(default=0, ge=0)


class DispatchResult(SQLModel):
    """Jobs created by a dispatch, plus per-item enqueue errors."""

    event: str
    webhook_job_ids: list[UUID] = Field(default_factory=list)
    notification_job_ids: list[UUID] = Field(default_factory=list)
    notification_ids: list[UUID] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RetryFailedRequest(SQLModel):
    """Bulk retry filter; ``channels`` may include ``webhook``."""

    channels: list[str] | None = None
    older_than: datetime | None = None
    newer_than: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)


class RetryFailedResponse(SQLModel):
    """Jobs re-enqueued by a bulk retry."""

    retried: int
    job_ids: list[UUID]
