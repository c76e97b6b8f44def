"""Notification entity models: templates, preferences and rendered notifications."""

import re
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from sqlmodel import Column, Field, SQLModel

from app.models.types import JSONType

TIME_OF_DAY_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class NotificationChannel(str, Enum):
    """Notification delivery channels."""

    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"
    WEB_PUSH = "web_push"
    IN_APP = "in_app"


ALL_CHANNELS = frozenset(NotificationChannel)

# Queue lane that carries each channel's jobs
CHANNEL_LANES: dict[NotificationChannel, str] = {
    NotificationChannel.PUSH: "push",
    NotificationChannel.SMS: "sms",
    NotificationChannel.EMAIL: "email",
    NotificationChannel.WEB_PUSH: "web-push",
    NotificationChannel.IN_APP: "in-app",
}


class NotificationPriority(str, Enum):
    """Caller-facing priority, mapped onto job priority numbers."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def job_priority(self) -> int:
        return {"high": 1, "normal": 2, "low": 3}[self.value]


class NotificationStatus(str, Enum):
    """Aggregate status of a rendered notification across its channels."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationTemplate(SQLModel, table=True):
    """Notification template database model."""

    __tablename__ = "notification_templates"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=100, unique=True, index=True)
    event: str | None = Field(default=None, max_length=100, index=True)
    title: str | None = Field(default=None, max_length=200)
    body: str
    channels: list[str] = Field(default_factory=list, sa_column=Column(JSONType))
    variables: list[str] = Field(default_factory=list, sa_column=Column(JSONType))
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType))
    version: int = Field(default=1)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationPreference(SQLModel, table=True):
    """Per-user channel preferences and quiet hours."""

    __tablename__ = "notification_preferences"

    user_id: UUID = Field(foreign_key="recipients.id", primary_key=True)
    channels: dict[str, bool] = Field(default_factory=dict, sa_column=Column(JSONType))
    quiet_hours_start: str | None = Field(default=None, max_length=5)
    quiet_hours_end: str | None = Field(default=None, max_length=5)
    quiet_hours_timezone: str | None = Field(default=None, max_length=64)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def enabled_channels(self) -> set[NotificationChannel]:
        """Channels switched on; channels never mentioned default to enabled."""
        return {
            channel
            for channel in NotificationChannel
            if self.channels.get(channel.value, True)
        }


class Notification(SQLModel, table=True):
    """Rendered notification sent to one user for one dispatched event."""

    __tablename__ = "notifications"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="recipients.id", index=True)
    template: str = Field(max_length=100)
    event: str = Field(max_length=100, index=True)
    title: str = Field(default="", max_length=200)
    body: str
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType))
    channels: list[str] = Field(default_factory=list, sa_column=Column(JSONType))
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING, index=True)
    error: str | None = Field(default=None, max_length=500)
    in_app_at: datetime | None = Field(default=None)
    read_at: datetime | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class TemplateCreate(SQLModel):
    """Schema for template creation."""

    name: str = Field(min_length=1, max_length=100)
    event: str | None = Field(default=None, max_length=100)
    title: str | None = Field(default=None, max_length=200)
    body: str = Field(min_length=1)
    channels: list[NotificationChannel] = Field(min_length=1)
    variables: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


class TemplateUpdate(SQLModel):
    """Schema for template update; bumps the version."""

    event: str | None = None
    title: str | None = None
    body: str | None = None
    channels: list[NotificationChannel] | None = None
    variables: list[str] | None = None
    data: dict[str, Any] | None = None
    is_active: bool | None = None


class TemplateResponse(SQLModel):
    """Schema for template response."""

    id: UUID
    name: str
    event: str | None
    title: str | None
    body: str
    channels: list[str]
    variables: list[str]
    data: dict[str, Any]
    version: int
    is_active: bool

    model_config = {"from_attributes": True}


class PreferencesUpdate(SQLModel):
    """Schema for preference upsert."""

    channels: dict[NotificationChannel, bool] = Field(default_factory=dict)
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None
    quiet_hours_timezone: str | None = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _check_time_of_day(cls, value: str | None) -> str | None:
        if value is not None and not TIME_OF_DAY_PATTERN.match(value):
            raise ValueError("quiet hours must use HH:MM (24h)")
        return value

    @field_validator("quiet_hours_timezone")
    @classmethod
    def _check_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {value}")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "PreferencesUpdate":
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end go together")
        return self


class PreferencesResponse(SQLModel):
    """Schema for preference response."""

    user_id: UUID
    channels: dict[str, bool]
    quiet_hours_start: str | None
    quiet_hours_end: str | None
    quiet_hours_timezone: str | None

    model_config = {"from_attributes": True}


class NotificationResponse(SQLModel):
    """Schema for notification response."""

    id: UUID
    user_id: UUID
    template: str
    event: str
    title: str
    body: str
    data: dict[str, Any]
    channels: list[str]
    priority: NotificationPriority
    status: NotificationStatus
    error: str | None
    in_app_at: datetime | None
    read_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(SQLModel):
    """Schema for notification list response."""

    notifications: list[NotificationResponse]
    total: int
