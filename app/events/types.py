"""Queue lifecycle event definitions."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class QueueEventType(str, Enum):
    """Job lifecycle transitions observable by subscribers."""

    JOB_COMPLETED = "job.completed"
    JOB_RETRYING = "job.retrying"
    JOB_FAILED = "job.failed"
    JOB_STALLED = "job.stalled"


class QueueEvent(BaseModel):
    """A job lifecycle transition published by the workers."""

    event_id: UUID = Field(default_factory=uuid4, description="Unique event identifier")
    event_type: QueueEventType = Field(description="Lifecycle transition")

    job_id: UUID = Field(description="Job the transition applies to")
    lane: str = Field(description="Lane the job runs in")
    channel: str = Field(description="Delivery channel or 'webhook'")
    attempt: int = Field(default=0, description="Attempt number that caused the transition")
    error: str | None = Field(default=None, description="Failure reason, truncated")
    delay_ms: int | None = Field(default=None, description="Backoff before the next attempt")

    # Delivery context copied from the job payload
    delivery_event: str | None = Field(default=None, description="Dispatched event name")
    notification_id: UUID | None = None
    registration_id: UUID | None = None

    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="Event timestamp (UTC)",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary for logging."""
        return self.model_dump(mode="json", exclude_none=True)
