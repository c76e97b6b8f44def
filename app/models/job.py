"""Job and lane models for the durable job store."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlmodel import Column, Field, SQLModel

from app.models.types import JSONType


class JobStatus(str, Enum):
    """Job lifecycle status.

    waiting -> active -> completed
                      -> delayed (retry) -> waiting
                      -> failed
    """

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class Lane(SQLModel, table=True):
    """Named queue partition with its default job options.

    Pause state is stored here so every worker process observes it.
    """

    __tablename__ = "queue_lanes"

    name: str = Field(primary_key=True, max_length=100)
    concurrency: int = Field(default=5)
    max_attempts: int = Field(default=3)
    base_delay_ms: int = Field(default=1000)
    timeout_ms: int = Field(default=30000)
    paused: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Job(SQLModel, table=True):
    """Queued unit of work.

    Mutated by exactly one worker at a time; ownership is taken by an
    atomic compare-and-swap on ``status`` (see QueueService.claim_job).
    """

    __tablename__ = "jobs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    lane: str = Field(foreign_key="queue_lanes.name", max_length=100, index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType))
    priority: int = Field(default=2, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    base_delay_ms: int = Field(default=1000)
    status: JobStatus = Field(default=JobStatus.WAITING, index=True)
    scheduled_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    timeout_ms: int = Field(default=30000)

    # Claim ownership
    locked_by: str | None = Field(default=None, max_length=255)
    lease_expires_at: datetime | None = Field(default=None, index=True)

    last_error: str | None = Field(default=None, max_length=1000)
    retry_of: UUID | None = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: datetime | None = Field(default=None)
    finished_at: datetime | None = Field(default=None, index=True)


class JobOptions(SQLModel):
    """Per-job overrides of the lane defaults."""

    priority: int = Field(default=2, ge=1, le=10)
    delay_ms: int = Field(default=0, ge=0)
    max_attempts: int | None = Field(default=None, ge=1)
    base_delay_ms: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, ge=1)


class JobResponse(SQLModel):
    """Schema for job response."""

    id: UUID
    lane: str
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    status: JobStatus
    scheduled_at: datetime
    timeout_ms: int
    locked_by: str | None
    lease_expires_at: datetime | None
    last_error: str | None
    retry_of: UUID | None
    created_at: datetime
    finished_at: datetime | None

    model_config = {"from_attributes": True}


class JobCounts(SQLModel):
    """Number of jobs per status in one lane."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0


class LaneResponse(SQLModel):
    """Schema for lane status response."""

    name: str
    concurrency: int
    max_attempts: int
    base_delay_ms: int
    timeout_ms: int
    paused: bool
    counts: JobCounts


class CleanRequest(SQLModel):
    """Schema for lane retention cleanup."""

    older_than_ms: int = Field(default=24 * 3600 * 1000, ge=0)
    statuses: list[JobStatus] = Field(
        default_factory=lambda: [JobStatus.COMPLETED, JobStatus.FAILED]
    )


class CleanResponse(SQLModel):
    """Schema for lane cleanup result."""

    lane: str
    removed: int
