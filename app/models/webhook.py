"""WebhookRegistration entity model for outbound webhook delivery."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlmodel import Column, Field, SQLModel

from app.models.types import JSONType


class RetryPolicySchema(SQLModel):
    """Per-registration retry policy."""

    max_attempts: int = Field(default=3, ge=1, le=25)
    base_delay_ms: int = Field(default=5000, ge=0)


class WebhookRegistration(SQLModel, table=True):
    """Webhook registration database model.

    Registrations are never hard-deleted; ``is_active`` is toggled instead
    so delivery history keeps pointing at a real record.
    """

    __tablename__ = "webhook_registrations"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    endpoint: str = Field(max_length=2048)
    events: list[str] = Field(default_factory=list, sa_column=Column(JSONType))
    secret: str = Field(max_length=255)
    is_active: bool = Field(default=True, index=True)
    retry_policy: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType))
    headers: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSONType))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def policy(self) -> RetryPolicySchema:
        """Return the stored retry policy as a schema object."""
        return RetryPolicySchema.model_validate(self.retry_policy or {})


class WebhookCreate(SQLModel):
    """Schema for webhook registration."""

    endpoint: str = Field(max_length=2048)
    events: list[str] = Field(min_length=1)
    secret: str = Field(min_length=1, max_length=255)
    retry_policy: RetryPolicySchema | None = None
    headers: dict[str, str] | None = None


class WebhookUpdate(SQLModel):
    """Schema for webhook update (soft-disable, resubscribe)."""

    is_active: bool | None = None
    events: list[str] | None = None
    retry_policy: RetryPolicySchema | None = None
    headers: dict[str, str] | None = None


class WebhookResponse(SQLModel):
    """Schema for webhook response (secret omitted)."""

    id: UUID
    endpoint: str
    events: list[str]
    is_active: bool
    retry_policy: dict[str, Any]
    headers: dict[str, str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookListResponse(SQLModel):
    """Schema for webhook list response."""

    webhooks: list[WebhookResponse]
    total: int
