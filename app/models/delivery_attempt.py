"""DeliveryAttempt entity model: the append-only delivery audit trail."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel


class AttemptOutcome(str, Enum):
    """Outcome of one delivery attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class DeliveryAttempt(SQLModel, table=True):
    """One attempt to deliver one job. Never updated after insert."""

    __tablename__ = "delivery_attempts"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(index=True)
    channel: str = Field(max_length=32, index=True)
    attempt_number: int
    outcome: AttemptOutcome = Field(index=True)
    http_status: int | None = Field(default=None)
    error_detail: str | None = Field(default=None, max_length=500)
    event: str | None = Field(default=None, max_length=100, index=True)
    registration_id: UUID | None = Field(default=None, index=True)
    notification_id: UUID | None = Field(default=None, index=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)


class DeliveryAttemptResponse(SQLModel):
    """Schema for delivery attempt response."""

    id: UUID
    job_id: UUID
    channel: str
    attempt_number: int
    outcome: AttemptOutcome
    http_status: int | None
    error_detail: str | None
    event: str | None
    registration_id: UUID | None
    notification_id: UUID | None
    timestamp: datetime

    model_config = {"from_attributes": True}


class DeliveryHistoryResponse(SQLModel):
    """Schema for delivery history response."""

    attempts: list[DeliveryAttemptResponse]
    total: int


class DeliveryMetrics(SQLModel):
    """Aggregated delivery statistics. Rates are percentages."""

    total: int = 0
    by_outcome: dict[str, int] = Field(default_factory=dict)
    by_channel: dict[str, int] = Field(default_factory=dict)
    attempted_jobs: int = 0
    delivered_jobs: int = 0
    failed_jobs: int = 0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
