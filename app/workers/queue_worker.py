"""Queue worker: claims jobs from one lane and runs them through a handler.

Processes jobs:
1. Fetches due waiting jobs of the lane (skipped while the lane is paused)
2. Claims each one atomically; losers move on to the next candidate
3. Runs the handler bounded by the job timeout
4. Completes or fails the job, records the attempt, publishes the event
"""

import logging
import os
import socket
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlmodel import Session

from app.config import Settings, get_settings
from app.events.consumers import EventBus
from app.events.types import QueueEvent, QueueEventType
from app.models.delivery_attempt import AttemptOutcome
from app.services.errors import DeliveryError, JobTimeoutError, PermanentDeliveryError
from app.services.queue import QueueService
from app.services.tracker import DeliveryTracker
from app.transports.base import DeliveryResult
from app.workers.base import WorkerBase

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Identity written to ``locked_by``: host, process and thread."""
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


def _as_uuid(value: Any) -> UUID | None:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


@dataclass(frozen=True)
class ClaimedJob:
    """Detached snapshot of a job handed to a handler.

    Handlers run outside the worker's session, so they get plain data
    instead of an ORM object.
    """

    id: UUID
    lane: str
    attempts: int
    max_attempts: int
    timeout_ms: int
    worker_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: Any, worker_id: str) -> "ClaimedJob":
        return cls(
            id=job.id,
            lane=job.lane,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            timeout_ms=job.timeout_ms,
            worker_id=worker_id,
            payload=dict(job.payload or {}),
        )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def channel(self) -> str:
        if self.payload.get("kind") == "webhook":
            return "webhook"
        return self.payload.get("channel") or self.lane

    @property
    def event(self) -> str | None:
        return self.payload.get("event")

    @property
    def registration_id(self) -> UUID | None:
        return _as_uuid(self.payload.get("registration_id"))

    @property
    def notification_id(self) -> UUID | None:
        return _as_uuid(self.payload.get("notification_id"))


JobHandler = Callable[[ClaimedJob], DeliveryResult | None]


class QueueWorker(WorkerBase[UUID, ClaimedJob]):
    """Worker for one lane and one handler.

    A handler returns a DeliveryResult (or None for plain success) or
    raises. Unsuccessful results are turned into DeliveryError so the
    failure path is the same for both styles.
    """

    def __init__(
        self,
        lane: str,
        handler: JobHandler,
        worker_id: str | None = None,
        bus: EventBus | None = None,
        settings: Settings | None = None,
        batch_size: int | None = None,
        executor: ThreadPoolExecutor | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        super().__init__(
            batch_size=batch_size or self.settings.WORKER_BATCH_SIZE,
            stop_event=stop_event,
        )
        self.lane = lane
        self.handler = handler
        self.worker_id = worker_id or default_worker_id()
        self.bus = bus or EventBus()
        self._owns_executor = executor is None
        self._executor = executor or self._new_executor()

    @property
    def worker_name(self) -> str:
        return f"QueueWorker:{self.lane}"

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"handler-{self.lane}")

    def _abandon_executor(self) -> None:
        """Swap in a fresh pool so a timed-out handler cannot block the next job.

        The stuck thread keeps running until its handler returns; transports
        bound their own I/O with the same timeout.
        """
        stuck = self._executor
        self._executor = self._new_executor()
        if self._owns_executor:
            stuck.shutdown(wait=False, cancel_futures=True)
        self._owns_executor = True

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def fetch_pending(self, session: Session) -> list[UUID]:
        queue = QueueService(session, self.settings)
        if queue.is_paused(self.lane):
            self._logger.debug(f"[{self.worker_name}] Lane paused")
            return []
        return queue.candidate_ids(self.lane, limit=self.batch_size)

    def claim(self, session: Session, candidate: UUID) -> ClaimedJob | None:
        job = QueueService(session, self.settings).claim_job(candidate, self.worker_id)
        if job is None:
            return None
        return ClaimedJob.from_job(job, self.worker_id)

    def get_item_id(self, item: UUID | ClaimedJob) -> UUID:
        return item.id if isinstance(item, ClaimedJob) else item

    def process_item(self, session: Session, item: ClaimedJob) -> DeliveryResult:
        """Run the handler, waiting at most the job timeout.

        Raises:
            JobTimeoutError: handler did not finish in time
            DeliveryError: handler reported an unsuccessful result
        """
        future = self._executor.submit(self.handler, item)
        try:
            result = future.result(timeout=item.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            self._abandon_executor()
            raise JobTimeoutError(f"Job timed out after {item.timeout_ms}ms")

        if result is None:
            return DeliveryResult.ok()
        if not result.success:
            error_cls = DeliveryError if result.retryable else PermanentDeliveryError
            raise error_cls(
                result.error_message or "Delivery failed",
                status_code=result.status_code,
            )
        return result

    def mark_completed(self, session: Session, item: ClaimedJob, outcome: DeliveryResult) -> None:
        if not QueueService(session, self.settings).complete(item.id, self.worker_id):
            self._logger.warning(
                f"[{self.worker_name}] Lost lease before completion",
                extra={"job_id": str(item.id)},
            )
            return

        DeliveryTracker(session).record(
            job_id=item.id,
            channel=item.channel,
            attempt_number=item.attempts,
            outcome=AttemptOutcome.SUCCESS,
            http_status=outcome.status_code,
            event=item.event,
            registration_id=item.registration_id,
            notification_id=item.notification_id,
        )
        self._publish(session, item, QueueEventType.JOB_COMPLETED)

    def mark_failed(
        self,
        session: Session,
        item: ClaimedJob,
        error: str,
        can_retry: bool,
        status_code: int | None = None,
    ) -> None:
        decision = QueueService(session, self.settings).fail(
            item.id, self.worker_id, error, retryable=can_retry
        )
        if decision is None:
            self._logger.warning(
                f"[{self.worker_name}] Lost lease before failure could be recorded",
                extra={"job_id": str(item.id)},
            )
            return

        DeliveryTracker(session).record(
            job_id=item.id,
            channel=item.channel,
            attempt_number=item.attempts,
            outcome=AttemptOutcome.FAILURE,
            http_status=status_code,
            error_detail=error,
            event=item.event,
            registration_id=item.registration_id,
            notification_id=item.notification_id,
        )
        if decision.retry:
            self._publish(
                session, item, QueueEventType.JOB_RETRYING, error, decision.delay_ms
            )
        else:
            self._publish(session, item, QueueEventType.JOB_FAILED, error)

    def _publish(
        self,
        session: Session,
        item: ClaimedJob,
        event_type: QueueEventType,
        error: str | None = None,
        delay_ms: int | None = None,
    ) -> None:
        self.bus.publish(
            session,
            QueueEvent(
                event_type=event_type,
                job_id=item.id,
                lane=item.lane,
                channel=item.channel,
                attempt=item.attempts,
                error=error,
                delay_ms=delay_ms,
                delivery_event=item.event,
                notification_id=item.notification_id,
                registration_id=item.registration_id,
            ),
        )
