"""Recipient contact directory model."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import EmailStr
from sqlmodel import Column, Field, SQLModel

from app.models.types import JSONType


class Recipient(SQLModel, table=True):
    """Contact details used to address notification channels.

    Owned by the user service; the delivery engine only reads it.
    """

    __tablename__ = "recipients"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str | None = Field(default=None, max_length=255, index=True)
    phone: str | None = Field(default=None, max_length=32)
    push_tokens: list[str] = Field(default_factory=list, sa_column=Column(JSONType))
    web_push_subscriptions: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSONType)
    )
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class RecipientCreate(SQLModel):
    """Schema for recipient registration."""

    id: UUID | None = None
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    push_tokens: list[str] = Field(default_factory=list)
    web_push_subscriptions: list[dict[str, Any]] = Field(default_factory=list)


class RecipientResponse(SQLModel):
    """Schema for recipient response."""

    id: UUID
    email: str | None
    phone: str | None
    push_tokens: list[str]
    web_push_subscriptions: list[dict[str, Any]]
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}
