"""Queue service over the durable job store.

Provides lane-scoped job management:
1. Enqueue (single and bulk) with priority, delay and retry options
2. Atomic claim: compare-and-swap ``waiting -> active`` with a lease
3. Completion / failure with backoff-driven re-scheduling
4. Lease reclaim for crashed or stalled workers
5. Pause/resume, retention cleanup and best-effort removal

All coordination happens through the database, so any number of worker
processes can share a lane without in-memory locks.
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.config import Settings, get_settings
from app.models.job import (
    TERMINAL_STATUSES,
    Job,
    JobCounts,
    JobOptions,
    JobStatus,
    Lane,
)
from app.services.backoff import RetryDecision, RetryPolicy, decide
from app.services.errors import (
    InvalidCleanStatus,
    InvalidLane,
    InvalidPayload,
    JobNotFound,
    JobNotRetryable,
)

logger = logging.getLogger(__name__)

WEBHOOK_LANE = "webhook-delivery"

# Lane defaults mirror the historical Bull queue configuration
DEFAULT_LANES: dict[str, dict[str, int]] = {
    WEBHOOK_LANE: {"concurrency": 5, "max_attempts": 3, "base_delay_ms": 5000, "timeout_ms": 30000},
    "push": {"concurrency": 5, "max_attempts": 3, "base_delay_ms": 1000, "timeout_ms": 30000},
    "sms": {"concurrency": 5, "max_attempts": 3, "base_delay_ms": 1000, "timeout_ms": 30000},
    "email": {"concurrency": 5, "max_attempts": 3, "base_delay_ms": 1000, "timeout_ms": 30000},
    "web-push": {"concurrency": 5, "max_attempts": 3, "base_delay_ms": 1000, "timeout_ms": 30000},
    "in-app": {"concurrency": 2, "max_attempts": 3, "base_delay_ms": 1000, "timeout_ms": 10000},
}


@dataclass
class BulkEnqueueResult:
    """Outcome of one item of a bulk enqueue."""

    index: int
    job_id: UUID | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.job_id is not None


@dataclass
class ReclaimedJob:
    """A job whose lease expired without a completion signal."""

    job_id: UUID
    lane: str
    attempts: int
    max_attempts: int
    timeout_ms: int
    payload: dict[str, Any]
    previous_owner: str | None
    terminal: bool


class QueueService:
    """Lane-scoped operations on the job store.

    One instance wraps one session; it commits after every state change so
    other workers observe transitions immediately.
    """

    CLAIM_CANDIDATES = 10

    def __init__(self, session: Session, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Lanes
    # -------------------------------------------------------------------------

    def register_lane(
        self,
        name: str,
        concurrency: int | None = None,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> Lane:
        """Create a lane or update the given fields of an existing one."""
        lane = self.session.get(Lane, name)
        if lane is None:
            lane = Lane(
                name=name,
                concurrency=concurrency or self.settings.WORKER_CONCURRENCY,
                max_attempts=max_attempts or self.settings.WORKER_MAX_RETRIES,
                base_delay_ms=(
                    base_delay_ms
                    if base_delay_ms is not None
                    else self.settings.WORKER_RETRY_DELAY_SECONDS * 1000
                ),
                timeout_ms=timeout_ms or self.settings.QUEUE_DEFAULT_TIMEOUT_MS,
            )
        else:
            if concurrency is not None:
                lane.concurrency = concurrency
            if max_attempts is not None:
                lane.max_attempts = max_attempts
            if base_delay_ms is not None:
                lane.base_delay_ms = base_delay_ms
            if timeout_ms is not None:
                lane.timeout_ms = timeout_ms
            lane.updated_at = datetime.utcnow()

        self.session.add(lane)
        self.session.commit()
        self.session.refresh(lane)
        return lane

    def ensure_default_lanes(self) -> list[Lane]:
        """Register every default lane that does not exist yet."""
        lanes = []
        for name, config in DEFAULT_LANES.items():
            lane = self.session.get(Lane, name)
            if lane is None:
                lane = self.register_lane(name, **config)
            lanes.append(lane)
        return lanes

    def get_lane(self, name: str) -> Lane:
        """Return a lane or raise InvalidLane."""
        lane = self.session.get(Lane, name)
        if lane is None:
            raise InvalidLane(name)
        return lane

    def list_lanes(self) -> list[Lane]:
        return list(self.session.exec(select(Lane).order_by(Lane.name)).all())

    def pause(self, name: str) -> Lane:
        """Stop claiming new jobs; in-flight jobs run to completion."""
        return self._set_paused(name, True)

    def resume(self, name: str) -> Lane:
        return self._set_paused(name, False)

    def is_paused(self, name: str) -> bool:
        lane = self.session.get(Lane, name, populate_existing=True)
        if lane is None:
            raise InvalidLane(name)
        return lane.paused

    def _set_paused(self, name: str, paused: bool) -> Lane:
        lane = self.get_lane(name)
        lane.paused = paused
        lane.updated_at = datetime.utcnow()
        self.session.add(lane)
        self.session.commit()
        self.session.refresh(lane)
        logger.info(
            f"Lane {'paused' if paused else 'resumed'}",
            extra={"lane": name},
        )
        return lane

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def validate_payload(self, payload: Any) -> None:
        """Reject payloads that are not JSON objects or are too large."""
        if not isinstance(payload, dict):
            raise InvalidPayload("Payload must be a JSON object")
        try:
            encoded = json.dumps(payload, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Payload is not JSON serializable: {e}") from e
        if len(encoded.encode("utf-8")) > self.settings.QUEUE_MAX_PAYLOAD_BYTES:
            raise InvalidPayload(
                f"Payload exceeds {self.settings.QUEUE_MAX_PAYLOAD_BYTES} bytes"
            )

    def _build_job(
        self,
        lane: Lane,
        payload: dict[str, Any],
        options: JobOptions | None,
        now: datetime,
    ) -> Job:
        options = options or JobOptions()
        scheduled_at = now + timedelta(milliseconds=options.delay_ms)
        return Job(
            lane=lane.name,
            payload=payload,
            priority=options.priority,
            max_attempts=options.max_attempts or lane.max_attempts,
            base_delay_ms=(
                options.base_delay_ms
                if options.base_delay_ms is not None
                else lane.base_delay_ms
            ),
            timeout_ms=options.timeout_ms or lane.timeout_ms,
            status=JobStatus.DELAYED if options.delay_ms > 0 else JobStatus.WAITING,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
        )

    def enqueue(
        self,
        lane_name: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
        now: datetime | None = None,
    ) -> UUID:
        """Add one job to a lane.

        Raises:
            InvalidLane: lane is not registered
            InvalidPayload: payload failed shape/size checks
        """
        lane = self.get_lane(lane_name)
        self.validate_payload(payload)

        job = self._build_job(lane, payload, options, now or datetime.utcnow())
        self.session.add(job)
        self.session.commit()

        logger.debug(
            "Job enqueued",
            extra={"job_id": str(job.id), "lane": lane_name, "priority": job.priority},
        )
        return job.id

    def enqueue_bulk(
        self,
        lane_name: str,
        payloads: Sequence[dict[str, Any]],
        options: JobOptions | Sequence[JobOptions | None] | None = None,
        now: datetime | None = None,
    ) -> list[BulkEnqueueResult]:
        """Add many jobs; each item succeeds or fails on its own.

        Args:
            lane_name: Target lane
            payloads: Job payloads
            options: Shared options, or one entry per payload

        Returns:
            One BulkEnqueueResult per payload, in input order
        """
        lane = self.get_lane(lane_name)
        now = now or datetime.utcnow()

        if options is None or isinstance(options, JobOptions):
            per_item: list[JobOptions | None] = [options] * len(payloads)
        else:
            per_item = list(options)
            if len(per_item) != len(payloads):
                raise ValueError("options must match payloads one-to-one")

        results: list[BulkEnqueueResult] = []
        for index, (payload, item_options) in enumerate(zip(payloads, per_item)):
            try:
                self.validate_payload(payload)
                job = self._build_job(lane, payload, item_options, now)
                self.session.add(job)
                self.session.commit()
                results.append(BulkEnqueueResult(index=index, job_id=job.id))
            except InvalidPayload as e:
                results.append(BulkEnqueueResult(index=index, error=str(e)))
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(
                    "Bulk enqueue item failed",
                    extra={"lane": lane_name, "index": index, "error": str(e)},
                    exc_info=True,
                )
                results.append(BulkEnqueueResult(index=index, error=str(e)[:500]))

        logger.info(
            "Bulk enqueue complete",
            extra={
                "lane": lane_name,
                "requested": len(payloads),
                "enqueued": sum(1 for r in results if r.ok),
            },
        )
        return results

    # -------------------------------------------------------------------------
    # Claim protocol
    # -------------------------------------------------------------------------

    def candidate_ids(
        self,
        lane_name: str,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> list[UUID]:
        """Ids of due waiting jobs, best candidates first.

        Priority and schedule are a preference only: concurrent workers
        race for the same candidates and the claim decides the winner.
        """
        now = now or datetime.utcnow()
        statement = (
            select(Job.id)
            .where(Job.lane == lane_name)
            .where(Job.status == JobStatus.WAITING)
            .where(Job.scheduled_at <= now)
            .order_by(Job.priority, Job.scheduled_at, Job.created_at)
            .limit(limit or self.CLAIM_CANDIDATES)
        )
        if self.session.get_bind().dialect.name == "postgresql":
            statement = statement.with_for_update(skip_locked=True)
        return list(self.session.exec(statement).all())

    def claim_job(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """Atomically take ownership of one waiting job.

        Jobs of a paused lane are never claimed, even when the lane was
        paused after the candidates were fetched.

        Returns:
            The claimed job, or None when another worker got there first
            or the lane is paused
        """
        now = now or datetime.utcnow()
        job = self.session.get(Job, job_id, populate_existing=True)
        if job is None:
            return None

        lease_expires_at = now + timedelta(milliseconds=job.timeout_ms)
        paused_lanes = select(Lane.name).where(Lane.paused.is_(True))
        result = self.session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.status == JobStatus.WAITING)
            .where(Job.scheduled_at <= now)
            .where(Job.attempts < Job.max_attempts)
            .where(Job.lane.not_in(paused_lanes))
            .values(
                status=JobStatus.ACTIVE,
                locked_by=worker_id,
                lease_expires_at=lease_expires_at,
                attempts=Job.attempts + 1,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        if result.rowcount != 1:
            return None

        self.session.refresh(job)
        return job

    def claim(
        self,
        lane_name: str,
        worker_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """Claim the best available job in a lane, if any."""
        if self.is_paused(lane_name):
            return None
        for job_id in self.candidate_ids(lane_name, now):
            job = self.claim_job(job_id, worker_id, now)
            if job is not None:
                return job
        return None

    def complete(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Mark an owned job completed.

        Returns:
            False if the worker no longer owns the job (lease reclaimed)
        """
        now = now or datetime.utcnow()
        result = self.session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.status == JobStatus.ACTIVE)
            .where(Job.locked_by == worker_id)
            .values(
                status=JobStatus.COMPLETED,
                lease_expires_at=None,
                last_error=None,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def fail(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> RetryDecision | None:
        """Record a failed run of an owned job and schedule what comes next.

        Returns:
            The retry decision, or None if the worker lost ownership
        """
        now = now or datetime.utcnow()
        job = self.session.get(Job, job_id, populate_existing=True)
        if job is None or job.status != JobStatus.ACTIVE or job.locked_by != worker_id:
            return None

        policy = RetryPolicy(
            max_attempts=job.max_attempts,
            base_delay_ms=job.base_delay_ms,
            max_delay_ms=self.settings.QUEUE_MAX_BACKOFF_MS,
        )
        decision = decide(job.attempts, policy, retryable=retryable, now=now)

        values: dict[str, Any] = {
            "last_error": error[:1000] if error else None,
            "lease_expires_at": None,
            "updated_at": now,
        }
        if decision.retry:
            values.update(
                status=JobStatus.DELAYED,
                scheduled_at=decision.scheduled_at,
                locked_by=None,
            )
        else:
            values.update(status=JobStatus.FAILED, finished_at=now)

        result = self.session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.status == JobStatus.ACTIVE)
            .where(Job.locked_by == worker_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return decision if result.rowcount == 1 else None

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def promote_delayed(self, now: datetime | None = None, lane_name: str | None = None) -> int:
        """Move due delayed jobs back to waiting."""
        now = now or datetime.utcnow()
        statement = (
            update(Job)
            .where(Job.status == JobStatus.DELAYED)
            .where(Job.scheduled_at <= now)
        )
        if lane_name is not None:
            statement = statement.where(Job.lane == lane_name)
        result = self.session.execute(
            statement.values(status=JobStatus.WAITING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def reclaim_expired(
        self,
        now: datetime | None = None,
        lane_name: str | None = None,
    ) -> list[ReclaimedJob]:
        """Release active jobs whose lease ran out.

        A job that still has attempts left goes back to waiting; one whose
        budget is spent fails terminally so ``attempts`` never exceeds
        ``max_attempts``.
        """
        now = now or datetime.utcnow()
        statement = (
            select(Job)
            .where(Job.status == JobStatus.ACTIVE)
            .where(Job.lease_expires_at < now)
        )
        if lane_name is not None:
            statement = statement.where(Job.lane == lane_name)
        expired = list(self.session.exec(statement).all())

        reclaimed: list[ReclaimedJob] = []
        for job in expired:
            terminal = job.attempts >= job.max_attempts
            values: dict[str, Any] = {
                "locked_by": None,
                "lease_expires_at": None,
                "last_error": "Lease expired before completion",
                "updated_at": now,
            }
            if terminal:
                values.update(status=JobStatus.FAILED, finished_at=now)
            else:
                values.update(status=JobStatus.WAITING)

            result = self.session.execute(
                update(Job)
                .where(Job.id == job.id)
                .where(Job.status == JobStatus.ACTIVE)
                .where(Job.lease_expires_at == job.lease_expires_at)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reclaimed.append(
                    ReclaimedJob(
                        job_id=job.id,
                        lane=job.lane,
                        attempts=job.attempts,
                        max_attempts=job.max_attempts,
                        timeout_ms=job.timeout_ms,
                        payload=dict(job.payload or {}),
                        previous_owner=job.locked_by,
                        terminal=terminal,
                    )
                )
        self.session.commit()

        if reclaimed:
            logger.warning(
                "Reclaimed jobs with expired leases",
                extra={
                    "count": len(reclaimed),
                    "job_ids": [str(r.job_id) for r in reclaimed],
                },
            )
        return reclaimed

    def clean(
        self,
        lane_name: str,
        older_than: timedelta,
        statuses: Sequence[JobStatus] = (JobStatus.COMPLETED, JobStatus.FAILED),
        now: datetime | None = None,
    ) -> int:
        """Purge terminal jobs that finished before ``now - older_than``."""
        statuses = [JobStatus(s) for s in statuses]
        invalid = [s.value for s in statuses if s not in TERMINAL_STATUSES]
        if invalid:
            raise InvalidCleanStatus(
                f"Only terminal jobs can be cleaned, got: {', '.join(invalid)}"
            )
        self.get_lane(lane_name)

        cutoff = (now or datetime.utcnow()) - older_than
        result = self.session.execute(
            delete(Job)
            .where(Job.lane == lane_name)
            .where(Job.status.in_(statuses))
            .where(Job.finished_at < cutoff)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()

        logger.info(
            "Lane cleaned",
            extra={"lane": lane_name, "removed": result.rowcount},
        )
        return result.rowcount

    def remove_job(self, job_id: UUID) -> bool:
        """Delete a job unless a worker holds it.

        Returns:
            True if removed, False if the job is active

        Raises:
            JobNotFound: no such job
        """
        if self.session.get(Job, job_id) is None:
            raise JobNotFound(f"Job {job_id} not found")

        # Status is re-checked inside the delete to lose races safely
        result = self.session.execute(
            delete(Job)
            .where(Job.id == job_id)
            .where(Job.status != JobStatus.ACTIVE)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Inspection and manual retry
    # -------------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> Job:
        job = self.session.get(Job, job_id, populate_existing=True)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def counts(self, lane_name: str) -> JobCounts:
        """Number of jobs per status in a lane."""
        self.get_lane(lane_name)
        rows = self.session.exec(
            select(Job.status, func.count())
            .where(Job.lane == lane_name)
            .group_by(Job.status)
        ).all()
        counts = JobCounts()
        for status, count in rows:
            setattr(counts, JobStatus(status).value, count)
        return counts

    def requeue_failed(self, job_id: UUID, now: datetime | None = None) -> Job:
        """Re-run a terminally failed job as a fresh job with attempts reset.

        The failed job itself stays untouched for audit; the new job points
        back at it through ``retry_of``.
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.FAILED:
            raise JobNotRetryable(
                f"Can only retry failed deliveries (job {job_id} is {job.status.value})"
            )

        now = now or datetime.utcnow()
        retry = Job(
            lane=job.lane,
            payload=dict(job.payload or {}),
            priority=job.priority,
            max_attempts=job.max_attempts,
            base_delay_ms=job.base_delay_ms,
            timeout_ms=job.timeout_ms,
            status=JobStatus.WAITING,
            scheduled_at=now,
            retry_of=job.id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(retry)
        self.session.commit()
        self.session.refresh(retry)

        logger.info(
            "Failed job re-enqueued",
            extra={"job_id": str(job.id), "retry_job_id": str(retry.id)},
        )
        return retry

    def failed_jobs(
        self,
        lanes: Sequence[str],
        older_than: datetime | None = None,
        newer_than: datetime | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Terminally failed jobs that have not been retried yet."""
        retried = select(Job.retry_of).where(Job.retry_of.is_not(None))
        statement = (
            select(Job)
            .where(Job.status == JobStatus.FAILED)
            .where(Job.lane.in_(list(lanes)))
            .where(Job.id.not_in(retried))
            .order_by(Job.created_at)
        )
        if older_than is not None:
            statement = statement.where(Job.created_at < older_than)
        if newer_than is not None:
            statement = statement.where(Job.created_at > newer_than)
        if limit is not None:
            statement = statement.limit(limit)
        return list(self.session.exec(statement).all())
