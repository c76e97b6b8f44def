"""Queue lane and job control API endpoints."""

from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.api.deps import Queue
from app.models.job import CleanRequest, CleanResponse, JobResponse, Lane, LaneResponse
from app.services.errors import InvalidCleanStatus, InvalidLane, JobNotFound
from app.services.queue import QueueService

router = APIRouter(tags=["Queues"])


def _lane_response(queue: QueueService, lane: Lane) -> LaneResponse:
    return LaneResponse(
        name=lane.name,
        concurrency=lane.concurrency,
        max_attempts=lane.max_attempts,
        base_delay_ms=lane.base_delay_ms,
        timeout_ms=lane.timeout_ms,
        paused=lane.paused,
        counts=queue.counts(lane.name),
    )


def _lane_not_found(e: InvalidLane) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=str(e),
    )


@router.get("/queues", response_model=list[LaneResponse])
def list_queues_endpoint(queue: Queue) -> list[LaneResponse]:
    """List lanes with their configuration and job counts."""
    return [_lane_response(queue, lane) for lane in queue.list_lanes()]


@router.get("/queues/{lane}", response_model=LaneResponse)
def get_queue_endpoint(queue: Queue, lane: str) -> LaneResponse:
    """Get one lane's configuration and job counts."""
    try:
        return _lane_response(queue, queue.get_lane(lane))
    except InvalidLane as e:
        raise _lane_not_found(e)


@router.post("/queues/{lane}/pause", response_model=LaneResponse)
def pause_queue_endpoint(queue: Queue, lane: str) -> LaneResponse:
    """Stop claiming new jobs; in-flight jobs finish."""
    try:
        return _lane_response(queue, queue.pause(lane))
    except InvalidLane as e:
        raise _lane_not_found(e)


@router.post("/queues/{lane}/resume", response_model=LaneResponse)
def resume_queue_endpoint(queue: Queue, lane: str) -> LaneResponse:
    """Resume claiming jobs."""
    try:
        return _lane_response(queue, queue.resume(lane))
    except InvalidLane as e:
        raise _lane_not_found(e)


@router.post("/queues/{lane}/clean", response_model=CleanResponse)
def clean_queue_endpoint(
    queue: Queue,
    lane: str,
    data: CleanRequest | None = None,
) -> CleanResponse:
    """Purge terminal jobs older than the retention window."""
    data = data or CleanRequest()
    try:
        removed = queue.clean(
            lane,
            older_than=timedelta(milliseconds=data.older_than_ms),
            statuses=data.statuses,
        )
    except InvalidLane as e:
        raise _lane_not_found(e)
    except InvalidCleanStatus as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    return CleanResponse(lane=lane, removed=removed)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job_endpoint(queue: Queue, job_id: UUID) -> JobResponse:
    """Inspect a job."""
    try:
        return JobResponse.model_validate(queue.get_job(job_id))
    except JobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job_endpoint(queue: Queue, job_id: UUID) -> None:
    """Remove a job unless a worker currently holds it."""
    try:
        removed = queue.remove_job(job_id)
    except JobNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job is active and cannot be removed",
        )
