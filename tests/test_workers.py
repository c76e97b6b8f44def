"""Tests for the queue workers and the worker runner.

Tests cover:
- WorkerResult serialization
- QueueWorker success, retry, permanent failure and timeout paths
- Retry exhaustion across runner cycles
- Lease reclaim and delayed-job promotion
- Graceful shutdown
- Running a subset of lanes and per-lane counts
- End-to-end dispatch of an event to a webhook and a push device
"""

import threading
from datetime import datetime, timedelta

import httpx
import pytest
from sqlmodel import Session

from app.events.consumers import EventBus, NotificationStatusSubscriber, QueueEventSubscriber
from app.events.types import QueueEventType
from app.models.delivery_attempt import AttemptOutcome
from app.models.dispatch import DispatchRequest
from app.models.job import JobOptions, JobStatus
from app.models.notification import Notification, NotificationStatus, TemplateCreate
from app.models.recipient import RecipientCreate
from app.models.webhook import WebhookCreate
from app.services.dispatch import DeliveryEngine
from app.services.errors import InvalidLane, PermanentDeliveryError
from app.services.notifications import NotificationService
from app.services.queue import QueueService
from app.services.signing import verify
from app.services.tracker import DeliveryTracker
from app.services.webhooks import WebhookService
from app.transports import build_transports
from app.transports.base import DeliveryResult
from app.transports.webhook import EVENT_HEADER, SIGNATURE_HEADER
from app.workers.base import WorkerResult, WorkerStatus
from app.workers.queue_worker import ClaimedJob, QueueWorker
from app.workers.runner import LEASE_EXPIRED_ERROR, WorkerRunner, lane_stats

LANE = "test"


class RecordingSubscriber(QueueEventSubscriber):
    """Keeps every event it sees."""

    def __init__(self):
        self.events = []

    def handles(self, event_type):
        return True

    def process(self, session, event):
        self.events.append(event)

    @property
    def types(self):
        return [event.event_type for event in self.events]


# ============================================================================
# WorkerResult Tests
# ============================================================================

class TestWorkerResult:
    """Tests for WorkerResult dataclass."""

    def test_worker_result_defaults(self):
        """WorkerResult initializes with zero counts."""
        result = WorkerResult(status=WorkerStatus.NO_WORK)

        assert result.processed_count == 0
        assert result.failed_count == 0
        assert result.skipped_count == 0
        assert result.errors == []

    def test_worker_result_to_dict(self):
        """WorkerResult converts to dict correctly."""
        result = WorkerResult(
            status=WorkerStatus.PARTIAL,
            processed_count=3,
            failed_count=1,
            errors=[{"item_id": "x", "error": "boom"}],
        )

        data = result.to_dict()

        assert data["status"] == "partial"
        assert data["processed_count"] == 3
        assert data["failed_count"] == 1
        assert data["errors"] == [{"item_id": "x", "error": "boom"}]


# ============================================================================
# QueueWorker Tests
# ============================================================================

class TestQueueWorker:
    """Tests for QueueWorker processing one lane."""

    def test_success_completes_and_records(self, db_session: Session, queue, recorder, settings):
        """A handler returning None completes the job."""
        job_id = queue.enqueue(LANE, {"event": "E"})
        seen = []
        worker = _worker(settings, recorder, lambda job: seen.append(job))

        result = worker.run(db_session)
        worker.close()

        assert result.status == WorkerStatus.SUCCESS
        assert result.processed_count == 1
        assert seen[0].id == job_id
        assert seen[0].attempts == 1
        assert seen[0].payload == {"event": "E"}

        job = queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.lease_expires_at is None

        attempts, total = DeliveryTracker(db_session).history(job_id=job_id)
        assert total == 1
        assert attempts[0].outcome == AttemptOutcome.SUCCESS
        assert attempts[0].event == "E"
        assert recorder.types == [QueueEventType.JOB_COMPLETED]

    def test_failed_result_schedules_retry(self, db_session: Session, queue, recorder, settings):
        """A retryable failure delays the job and publishes job.retrying."""
        job_id = queue.enqueue(LANE, {})
        worker = _worker(
            settings, recorder, lambda job: DeliveryResult.failed("HTTP 503", status_code=503)
        )

        result = worker.run(db_session)
        worker.close()

        assert result.status == WorkerStatus.FAILED
        assert result.failed_count == 1
        assert result.errors[0]["can_retry"] is True

        job = queue.get_job(job_id)
        assert job.status == JobStatus.DELAYED
        assert job.last_error == "HTTP 503"
        assert job.locked_by is None

        [attempt], _ = DeliveryTracker(db_session).history(job_id=job_id)
        assert attempt.outcome == AttemptOutcome.FAILURE
        assert attempt.http_status == 503
        assert recorder.types == [QueueEventType.JOB_RETRYING]
        assert recorder.events[0].delay_ms == 0

    def test_permanent_error_fails_immediately(self, db_session: Session, queue, recorder, settings):
        """A permanent error skips the remaining budget."""
        job_id = queue.enqueue(LANE, {})

        def handler(job: ClaimedJob):
            raise PermanentDeliveryError("Gone", status_code=410)

        worker = _worker(settings, recorder, handler)
        worker.run(db_session)
        worker.close()

        job = queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert recorder.types == [QueueEventType.JOB_FAILED]
        assert recorder.events[0].error == "Gone"

    def test_timeout_fails_attempt(self, db_session: Session, queue, recorder, settings):
        """A handler running past the job timeout counts as a failed attempt."""
        queue.register_lane("slow", max_attempts=3, base_delay_ms=0, timeout_ms=50)
        job_id = queue.enqueue("slow", {})
        release = threading.Event()

        worker = QueueWorker(
            "slow", lambda job: release.wait(5), worker_id="w1",
            bus=EventBus([recorder]), settings=settings,
        )
        try:
            result = worker.run(db_session)
        finally:
            release.set()
            worker.close()

        assert result.failed_count == 1
        job = queue.get_job(job_id)
        assert job.status == JobStatus.DELAYED
        assert "timed out" in job.last_error
        assert recorder.types == [QueueEventType.JOB_RETRYING]

    def test_timeout_does_not_hold_up_next_job(self, db_session: Session, queue, recorder, settings):
        """A job claimed after a timed-out one still gets its own full timeout."""
        queue.register_lane("slow", max_attempts=3, base_delay_ms=0, timeout_ms=200)
        slow_id = queue.enqueue("slow", {"name": "slow"})
        fast_id = queue.enqueue("slow", {"name": "fast"})
        release = threading.Event()
        ran = []

        def handler(job: ClaimedJob):
            ran.append(job.payload["name"])
            if job.payload["name"] == "slow":
                release.wait(5)

        worker = QueueWorker(
            "slow", handler, worker_id="w1", bus=EventBus([recorder]), settings=settings
        )
        try:
            result = worker.run(db_session)
        finally:
            release.set()
            worker.close()

        assert ran == ["slow", "fast"]
        assert result.processed_count == 1
        assert result.failed_count == 1
        assert queue.get_job(slow_id).status == JobStatus.DELAYED
        assert queue.get_job(fast_id).status == JobStatus.COMPLETED
        assert recorder.types == [QueueEventType.JOB_RETRYING, QueueEventType.JOB_COMPLETED]

    def test_pause_during_cycle_stops_claiming(
        self, db_session: Session, queue, recorder, settings, session_factory
    ):
        """Pausing while a job runs leaves the rest of the batch waiting."""
        job_ids = [queue.enqueue(LANE, {"n": n}) for n in range(3)]
        ran = []

        def handler(job: ClaimedJob):
            ran.append(job.payload["n"])
            with session_factory() as session:
                QueueService(session, settings).pause(LANE)

        worker = _worker(settings, recorder, handler)
        result = worker.run(db_session)
        worker.close()

        assert ran == [0]
        assert result.processed_count == 1
        assert result.skipped_count == 2
        assert [queue.get_job(job_id).status for job_id in job_ids] == [
            JobStatus.COMPLETED,
            JobStatus.WAITING,
            JobStatus.WAITING,
        ]

    def test_paused_lane_is_skipped(self, db_session: Session, queue, recorder, settings):
        """Workers do not claim from a paused lane."""
        job_id = queue.enqueue(LANE, {})
        queue.pause(LANE)

        worker = _worker(settings, recorder, lambda job: None)
        result = worker.run(db_session)
        worker.close()

        assert result.status == WorkerStatus.NO_WORK
        assert queue.get_job(job_id).status == JobStatus.WAITING

    def test_claim_lost_to_another_worker(self, db_session: Session, queue, recorder, settings):
        """Claiming a job someone else holds returns None."""
        job_id = queue.enqueue(LANE, {})
        assert queue.claim(LANE, "other-worker").id == job_id

        worker = _worker(settings, recorder, lambda job: None)
        assert worker.claim(db_session, job_id) is None
        worker.close()

    def test_stop_event_ends_cycle(self, db_session: Session, queue, recorder, settings):
        """A set stop event leaves remaining jobs untouched."""
        job_id = queue.enqueue(LANE, {})
        stop = threading.Event()
        stop.set()

        worker = QueueWorker(
            LANE, lambda job: None, worker_id="w1",
            bus=EventBus([recorder]), settings=settings, stop_event=stop,
        )
        result = worker.run(db_session)
        worker.close()

        assert result.processed_count == 0
        assert queue.get_job(job_id).status == JobStatus.WAITING


# ============================================================================
# Retry Exhaustion Tests
# ============================================================================

class TestRetryExhaustion:
    """Tests for retries across runner cycles."""

    def test_always_failing_job_gets_max_attempts(
        self, db_session: Session, queue, session_factory, settings
    ):
        """Three attempts, three failure records, then failed for good."""
        job_id = queue.enqueue(LANE, {"event": "E"})
        runner = _runner(
            session_factory, settings, lambda job: DeliveryResult.failed("HTTP 500", 500)
        )

        for _ in range(3):
            assert runner.run_once().total_failed == 1
        assert runner.run_once().total_failed == 0

        job = queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3

        attempts, total = DeliveryTracker(db_session).history(job_id=job_id)
        assert total == 3
        assert all(a.outcome == AttemptOutcome.FAILURE for a in attempts)
        assert sorted(a.attempt_number for a in attempts) == [1, 2, 3]

    def test_retry_then_success(self, db_session: Session, queue, session_factory, settings):
        """A job that fails once and then succeeds ends completed."""
        job_id = queue.enqueue(LANE, {})

        def handler(job: ClaimedJob):
            if job.attempts == 1:
                return DeliveryResult.failed("HTTP 503", 503)
            return DeliveryResult.ok(200)

        runner = _runner(session_factory, settings, handler)
        runner.run_once()
        runner.run_once()

        assert queue.get_job(job_id).status == JobStatus.COMPLETED
        metrics = DeliveryTracker(db_session).metrics()
        assert metrics.by_outcome == {"failure": 1, "success": 1}
        assert metrics.delivery_rate == 100.0


# ============================================================================
# Maintenance Tests
# ============================================================================

class TestMaintenance:
    """Tests for WorkerRunner.run_maintenance."""

    def test_expired_lease_returns_to_waiting(
        self, db_session: Session, queue, session_factory, settings
    ):
        """A crashed worker's job is reclaimed with a failure record."""
        job_id = queue.enqueue(LANE, {"event": "E"})
        job = queue.claim(LANE, "crashed-worker")
        recorder = RecordingSubscriber()
        runner = _runner(session_factory, settings, lambda job: None, bus=EventBus([recorder]))

        result = runner.run_maintenance(job.lease_expires_at + timedelta(seconds=1))

        assert result.reclaimed == 1
        assert result.failed == 0
        assert queue.get_job(job_id).status == JobStatus.WAITING
        assert recorder.types == [QueueEventType.JOB_STALLED]

        [attempt], _ = DeliveryTracker(db_session).history(job_id=job_id)
        assert attempt.outcome == AttemptOutcome.FAILURE
        assert attempt.error_detail == LEASE_EXPIRED_ERROR

    def test_expired_lease_without_budget_fails(
        self, db_session: Session, queue, session_factory, settings
    ):
        """Reclaiming a job on its last attempt fails it."""
        queue.register_lane("once", max_attempts=1, base_delay_ms=0, timeout_ms=1000)
        job_id = queue.enqueue("once", {})
        job = queue.claim("once", "crashed-worker")
        recorder = RecordingSubscriber()
        runner = _runner(session_factory, settings, lambda job: None, bus=EventBus([recorder]))

        result = runner.run_maintenance(job.lease_expires_at + timedelta(seconds=1))

        assert result.failed == 1
        assert queue.get_job(job_id).status == JobStatus.FAILED
        assert recorder.types == [QueueEventType.JOB_STALLED, QueueEventType.JOB_FAILED]

    def test_promotes_due_delayed_jobs(self, queue, session_factory, settings):
        """Delayed jobs become waiting once due."""
        now = datetime.utcnow()
        job_id = queue.enqueue(LANE, {}, JobOptions(delay_ms=60000), now=now)
        runner = _runner(session_factory, settings, lambda job: None)

        assert runner.run_maintenance(now).promoted == 0
        assert runner.run_maintenance(now + timedelta(minutes=2)).promoted == 1
        assert queue.get_job(job_id).status == JobStatus.WAITING


# ============================================================================
# Shutdown Tests
# ============================================================================

class TestShutdown:
    """Tests for graceful shutdown."""

    def test_request_shutdown_stops_claiming(self, queue, session_factory, settings):
        """After shutdown is requested no new jobs are claimed."""
        job_id = queue.enqueue(LANE, {})
        runner = _runner(session_factory, settings, lambda job: None)

        runner.request_shutdown()
        result = runner.run_once()

        assert runner.shutdown_requested is True
        assert result.total_processed == 0
        assert queue.get_job(job_id).status == JobStatus.WAITING

    def test_lane_thread_finishes_in_flight_job(self, queue, session_factory, settings):
        """A lane thread completes its job before exiting."""
        job_id = queue.enqueue(LANE, {})
        handled = threading.Event()

        def handler(job: ClaimedJob):
            handled.set()

        runner = _runner(session_factory, settings, handler)
        threads = runner.process(LANE, concurrency=1)
        assert len(threads) == 1

        assert handled.wait(5)
        runner.request_shutdown()
        runner.join(5)

        assert not threads[0].is_alive()
        assert queue.get_job(job_id).status == JobStatus.COMPLETED


# ============================================================================
# Lane Selection Tests
# ============================================================================

class TestLaneSelection:
    """Tests for running a subset of lanes."""

    def test_run_once_only_selected_lanes(self, queue, session_factory, settings):
        """Lanes left out of the selection keep their jobs."""
        queue.register_lane("other", max_attempts=3, base_delay_ms=0, timeout_ms=5000)
        selected = queue.enqueue(LANE, {})
        skipped = queue.enqueue("other", {})
        runner = _runner(session_factory, settings, lambda job: None)

        result = runner.run_once(lanes=[LANE])

        assert list(result.lane_results) == [LANE]
        assert queue.get_job(selected).status == JobStatus.COMPLETED
        assert queue.get_job(skipped).status == JobStatus.WAITING

    def test_unknown_lane_rejected(self, queue, session_factory, settings):
        """Selecting a lane that does not exist is an error."""
        runner = _runner(session_factory, settings, lambda job: None)

        with pytest.raises(InvalidLane):
            runner.run_once(lanes=["no-such-lane"])

    def test_lane_stats(self, queue, session_factory):
        """Counts are reported per registered lane."""
        queue.enqueue(LANE, {})

        stats = lane_stats(session_factory)

        assert stats[LANE].waiting == 1


# ============================================================================
# End-to-End Tests
# ============================================================================

class TestEndToEnd:
    """Dispatch an event and run the workers against mocked endpoints."""

    def test_order_shipped_reaches_webhook_and_push(
        self, db_session: Session, session_factory, settings
    ):
        """Both deliveries complete and the notification is sent."""
        received = []

        def endpoint(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200, text="ok")

        engine, registration, user = _order_setup(db_session, settings)
        result = engine.dispatch(
            DispatchRequest(
                event="order.shipped", payload={"orderId": "O1", "user_id": str(user.id)}
            )
        )
        assert len(result.webhook_job_ids) == 1
        assert len(result.notification_job_ids) == 1

        run = _e2e_runner(session_factory, settings, endpoint).run_once()

        assert run.total_processed == 2
        assert run.total_failed == 0

        [request] = received
        assert request.headers[EVENT_HEADER] == "order.shipped"
        assert verify(request.headers[SIGNATURE_HEADER], request.content, "whsec-test")

        for job_id in result.webhook_job_ids + result.notification_job_ids:
            assert engine.queue.get_job(job_id).status == JobStatus.COMPLETED

        db_session.expire_all()
        notification = db_session.get(Notification, result.notification_ids[0])
        assert notification.status == NotificationStatus.SENT

        metrics = DeliveryTracker(db_session).metrics(event="order.shipped")
        assert metrics.by_channel == {"push": 1, "webhook": 1}
        assert metrics.delivery_rate == 100.0

    def test_disabled_registration_fails_permanently(
        self, db_session: Session, session_factory, settings
    ):
        """A registration disabled after dispatch receives nothing."""
        received = []

        def endpoint(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        engine, registration, _ = _order_setup(db_session, settings)
        result = engine.dispatch(DispatchRequest(event="order.shipped", payload={"orderId": "O1"}))
        WebhookService(db_session, settings).set_active(registration.id, False)

        _e2e_runner(session_factory, settings, endpoint).run_once()

        job = engine.queue.get_job(result.webhook_job_ids[0])
        assert received == []
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "inactive" in job.last_error

    def test_failed_channel_marks_notification_failed(
        self, db_session: Session, session_factory, settings
    ):
        """A terminally failed only channel fails the notification."""
        engine, _, user = _order_setup(db_session, settings)
        result = engine.dispatch(
            DispatchRequest(event="order.shipped", payload={"user_id": str(user.id)})
        )
        runner = WorkerRunner(
            session_factory=session_factory,
            transports={},
            settings=settings,
            bus=EventBus([NotificationStatusSubscriber()]),
            handler=lambda job: DeliveryResult.failed("DeviceNotRegistered", retryable=False),
        )

        runner.run_once()

        db_session.expire_all()
        notification = db_session.get(Notification, result.notification_ids[0])
        assert notification.status == NotificationStatus.FAILED
        assert notification.error == "DeviceNotRegistered"


# ============================================================================
# Helpers and Fixtures
# ============================================================================

def _worker(settings, recorder, handler) -> QueueWorker:
    return QueueWorker(
        LANE, handler, worker_id="w1", bus=EventBus([recorder]), settings=settings
    )


def _runner(session_factory, settings, handler, bus=None) -> WorkerRunner:
    return WorkerRunner(
        session_factory=session_factory,
        transports={},
        settings=settings,
        bus=bus or EventBus(),
        handler=handler,
    )


def _e2e_runner(session_factory, settings, endpoint) -> WorkerRunner:
    client = httpx.Client(transport=httpx.MockTransport(endpoint))
    return WorkerRunner(
        session_factory=session_factory,
        transports=build_transports(session_factory, settings, http_client=client),
        settings=settings,
        bus=EventBus.with_defaults(),
    )


def _order_setup(db_session: Session, settings):
    """Default lanes, one webhook subscriber and one push recipient."""
    queue = QueueService(db_session, settings)
    queue.ensure_default_lanes()

    registration = WebhookService(db_session, settings).register(
        WebhookCreate(
            endpoint="https://hooks.example/orders",
            events=["order.shipped"],
            secret="whsec-test",
        )
    )
    notifications = NotificationService(db_session)
    notifications.create_template(
        TemplateCreate(
            name="order-shipped",
            event="order.shipped",
            title="Order shipped",
            body="Your order is on its way",
            channels=["push"],
        )
    )
    user = notifications.upsert_recipient(RecipientCreate(push_tokens=["ExponentPushToken[1]"]))
    return DeliveryEngine(db_session, queue=queue, settings=settings), registration, user


@pytest.fixture
def queue(db_session: Session, settings) -> QueueService:
    queue = QueueService(db_session, settings)
    queue.register_lane(LANE, concurrency=1, max_attempts=3, base_delay_ms=0, timeout_ms=5000)
    return queue


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()
