"""Delivery history, metrics and retry API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import DBSession, Engine, Tracker
from app.models.delivery_attempt import (
    AttemptOutcome,
    DeliveryAttemptResponse,
    DeliveryHistoryResponse,
    DeliveryMetrics,
)
from app.models.dispatch import RetryFailedRequest, RetryFailedResponse
from app.models.job import Job, JobResponse
from app.models.webhook import WebhookRegistration
from app.services.errors import DeliveryValidationError, JobNotFound, JobNotRetryable

router = APIRouter(prefix="/deliveries", tags=["Deliveries"])


@router.get("/metrics", response_model=DeliveryMetrics)
def delivery_metrics_endpoint(
    tracker: Tracker,
    channel: str | None = Query(default=None, description="Filter by channel"),
    event: str | None = Query(default=None, description="Filter by event name"),
    registration_id: UUID | None = Query(default=None, description="Filter by webhook"),
    since: datetime | None = Query(default=None, description="Attempts at or after"),
    until: datetime | None = Query(default=None, description="Attempts before"),
) -> DeliveryMetrics:
    """Aggregate delivery statistics."""
    return tracker.metrics(
        channel=channel,
        event=event,
        registration_id=registration_id,
        since=since,
        until=until,
    )


@router.post("/retry-failed", response_model=RetryFailedResponse)
def retry_failed_endpoint(
    engine: Engine,
    data: RetryFailedRequest,
) -> RetryFailedResponse:
    """Re-enqueue terminally failed deliveries matching the filter."""
    try:
        jobs = engine.retry_failed(
            channels=data.channels,
            older_than=data.older_than,
            newer_than=data.newer_than,
            limit=data.limit,
        )
    except DeliveryValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    return RetryFailedResponse(retried=len(jobs), job_ids=[job.id for job in jobs])


@router.get("/{delivery_id}", response_model=DeliveryHistoryResponse)
def delivery_history_endpoint(
    session: DBSession,
    tracker: Tracker,
    delivery_id: UUID,
    outcome: AttemptOutcome | None = Query(default=None, description="Filter by outcome"),
    channel: str | None = Query(default=None, description="Filter by channel"),
    since: datetime | None = Query(default=None, description="Attempts at or after"),
    until: datetime | None = Query(default=None, description="Attempts before"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum attempts to return"),
    offset: int = Query(default=0, ge=0, description="Number of attempts to skip"),
) -> DeliveryHistoryResponse:
    """Attempt history of a job, or of every job sent to a webhook registration."""
    filters = dict(
        outcome=outcome,
        channel=channel,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    if session.get(Job, delivery_id) is not None:
        attempts, total = tracker.history(job_id=delivery_id, **filters)
    elif session.get(WebhookRegistration, delivery_id) is not None:
        attempts, total = tracker.history(registration_id=delivery_id, **filters)
    else:
        # Jobs may have been cleaned while their attempts remain
        attempts, total = tracker.history(job_id=delivery_id, **filters)
        if total == 0:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Delivery not found",
            )

    return DeliveryHistoryResponse(
        attempts=[DeliveryAttemptResponse.model_validate(a) for a in attempts],
        total=total,
    )


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def retry_delivery_endpoint(
    engine: Engine,
    job_id: UUID,
) -> JobResponse:
    """Re-enqueue a failed delivery with its attempt count reset."""
    try:
        job = engine.retry_delivery(job_id)
        return JobResponse.model_validate(job)
    except JobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    except JobNotRetryable as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )
