"""Tests for event dispatch and retry control.

Tests cover:
- Webhook fan-out to active registrations
- Notification rendering, audience selection and channel lanes
- Up-front validation (nothing enqueued on rejection)
- Manual and bulk retry of failed deliveries
"""

from datetime import datetime
from uuid import UUID

import pytest
from sqlmodel import Session, select

from app.models.dispatch import DispatchRequest
from app.models.job import Job, JobStatus
from app.models.notification import (
    Notification,
    NotificationPriority,
    NotificationStatus,
    PreferencesUpdate,
    TemplateCreate,
)
from app.models.recipient import RecipientCreate
from app.models.webhook import RetryPolicySchema, WebhookCreate
from app.services.dispatch import DeliveryEngine
from app.services.errors import (
    DeliveryValidationError,
    InvalidPayload,
    JobNotRetryable,
    TemplateNotFound,
)
from app.services.notifications import NotificationService
from app.services.queue import WEBHOOK_LANE, QueueService
from app.services.webhooks import WebhookService


# ============================================================================
# Webhook Fan-out Tests
# ============================================================================

class TestWebhookFanOut:
    """Tests for webhook job creation."""

    def test_one_job_per_active_registration(self, engine_service: DeliveryEngine, webhooks):
        """Two active registrations give two jobs; disabling one gives one."""
        first = webhooks.register(
            WebhookCreate(endpoint="https://a.example/hook", events=["E"], secret="s1")
        )
        webhooks.register(
            WebhookCreate(endpoint="https://b.example/hook", events=["E"], secret="s2")
        )

        result = engine_service.dispatch(DispatchRequest(event="E", payload={"n": 1}))
        assert len(result.webhook_job_ids) == 2
        assert len(set(result.webhook_job_ids)) == 2

        webhooks.set_active(first.id, False)
        result = engine_service.dispatch(DispatchRequest(event="E", payload={"n": 2}))
        assert len(result.webhook_job_ids) == 1

    def test_job_carries_registration_policy(self, engine_service: DeliveryEngine, webhooks):
        """Webhook jobs use the registration's retry policy."""
        registration = webhooks.register(
            WebhookCreate(
                endpoint="https://a.example/hook",
                events=["E"],
                secret="s",
                retry_policy=RetryPolicySchema(max_attempts=7, base_delay_ms=250),
            )
        )

        result = engine_service.dispatch(
            DispatchRequest(event="E", payload={"n": 1}, priority=NotificationPriority.HIGH)
        )
        job = engine_service.queue.get_job(result.webhook_job_ids[0])

        assert job.lane == WEBHOOK_LANE
        assert job.max_attempts == 7
        assert job.base_delay_ms == 250
        assert job.priority == 1
        assert job.payload == {
            "kind": "webhook",
            "event": "E",
            "registration_id": str(registration.id),
            "payload": {"n": 1},
        }

    def test_no_subscribers(self, engine_service: DeliveryEngine):
        """An event nobody listens to creates no jobs."""
        result = engine_service.dispatch(DispatchRequest(event="nobody.cares"))
        assert result.webhook_job_ids == []
        assert result.notification_job_ids == []

    def test_delayed_dispatch(self, engine_service: DeliveryEngine, webhooks):
        """delay_ms schedules the jobs in the future."""
        webhooks.register(
            WebhookCreate(endpoint="https://a.example/hook", events=["E"], secret="s")
        )
        now = datetime(2026, 1, 1, 12)

        result = engine_service.dispatch(DispatchRequest(event="E", delay_ms=5000), now=now)
        job = engine_service.queue.get_job(result.webhook_job_ids[0])

        assert job.status == JobStatus.DELAYED


# ============================================================================
# Notification Dispatch Tests
# ============================================================================

class TestNotificationDispatch:
    """Tests for notification fan-out."""

    def test_renders_and_enqueues_per_channel(
        self, engine_service: DeliveryEngine, notifications: NotificationService, db_session: Session
    ):
        """One notification record, one job per reachable channel."""
        notifications.create_template(
            TemplateCreate(
                name="order-shipped",
                event="order.shipped",
                title="Order {{ orderId }}",
                body="Your order {{ orderId }} is on its way",
                channels=["push", "email", "in_app"],
                variables=["orderId"],
            )
        )
        user = notifications.upsert_recipient(
            RecipientCreate(email="a@example.com", push_tokens=["ExponentPushToken[1]"])
        )

        result = engine_service.dispatch(
            DispatchRequest(event="order.shipped", payload={"orderId": "O1", "user_id": str(user.id)}),
            now=datetime(2026, 1, 1, 12),
        )

        assert len(result.notification_ids) == 1
        notification = db_session.get(Notification, result.notification_ids[0])
        assert notification.title == "Order O1"
        assert notification.body == "Your order O1 is on its way"
        assert notification.channels == ["email", "in_app", "push"]
        assert notification.status == NotificationStatus.PENDING

        jobs = [engine_service.queue.get_job(job_id) for job_id in result.notification_job_ids]
        assert sorted(job.lane for job in jobs) == ["email", "in-app", "push"]
        push_job = next(job for job in jobs if job.lane == "push")
        assert push_job.payload["recipient"] == "ExponentPushToken[1]"
        assert push_job.payload["content"]["notification_id"] == str(notification.id)

    def test_requested_channels_narrow(
        self, engine_service: DeliveryEngine, notifications: NotificationService
    ):
        """Caller-requested channels intersect with the template."""
        notifications.create_template(
            TemplateCreate(name="t", event="E", body="hi", channels=["push", "in_app"])
        )
        user = notifications.upsert_recipient(RecipientCreate(push_tokens=["tok"]))

        result = engine_service.dispatch(
            DispatchRequest(event="E", user_ids=[user.id], channels=["in_app"])
        )

        [job_id] = result.notification_job_ids
        assert engine_service.queue.get_job(job_id).lane == "in-app"

    def test_quiet_hours_route_to_in_app(
        self, engine_service: DeliveryEngine, notifications: NotificationService
    ):
        """During quiet hours only the in-app job is created."""
        notifications.create_template(
            TemplateCreate(name="t", event="E", body="hi", channels=["push", "email"])
        )
        user = notifications.upsert_recipient(
            RecipientCreate(email="a@example.com", push_tokens=["tok"])
        )
        notifications.update_preferences(
            user.id,
            PreferencesUpdate(
                channels={"push": True, "email": True},
                quiet_hours_start="22:00",
                quiet_hours_end="06:00",
                quiet_hours_timezone="UTC",
            ),
        )

        result = engine_service.dispatch(
            DispatchRequest(event="E", user_ids=[user.id]), now=datetime(2026, 1, 1, 23, 30)
        )

        [job_id] = result.notification_job_ids
        assert engine_service.queue.get_job(job_id).lane == "in-app"

    def test_audience_defaults_to_active_recipients(
        self, engine_service: DeliveryEngine, notifications: NotificationService
    ):
        """Without user ids every active recipient is notified."""
        notifications.create_template(
            TemplateCreate(name="t", event="E", body="hi", channels=["in_app"])
        )
        notifications.upsert_recipient(RecipientCreate())
        notifications.upsert_recipient(RecipientCreate())

        result = engine_service.dispatch(DispatchRequest(event="E"))

        assert len(result.notification_ids) == 2

    def test_payload_user_id_selects_audience(
        self, engine_service: DeliveryEngine, notifications: NotificationService
    ):
        """A userId in the payload limits the audience to that user."""
        notifications.create_template(
            TemplateCreate(name="t", event="E", body="hi", channels=["in_app"])
        )
        target = notifications.upsert_recipient(RecipientCreate())
        notifications.upsert_recipient(RecipientCreate())

        result = engine_service.dispatch(
            DispatchRequest(event="E", payload={"userId": str(target.id)})
        )

        assert len(result.notification_ids) == 1

    def test_invalid_payload_user_id(
        self, engine_service: DeliveryEngine, notifications: NotificationService
    ):
        """A malformed user id is a validation error."""
        notifications.create_template(
            TemplateCreate(name="t", event="E", body="hi", channels=["in_app"])
        )
        with pytest.raises(DeliveryValidationError):
            engine_service.dispatch(DispatchRequest(event="E", payload={"user_id": "nope"}))

    def test_unknown_template(self, engine_service: DeliveryEngine):
        """An explicit unknown template is rejected."""
        with pytest.raises(TemplateNotFound):
            engine_service.dispatch(DispatchRequest(event="E", template="missing"))

    def test_rejected_payload_enqueues_nothing(
        self, engine_service: DeliveryEngine, webhooks, db_session: Session
    ):
        """Validation happens before any job is written."""
        webhooks.register(
            WebhookCreate(endpoint="https://a.example/hook", events=["E"], secret="s")
        )
        engine_service.settings.QUEUE_MAX_PAYLOAD_BYTES = 10

        with pytest.raises(InvalidPayload):
            engine_service.dispatch(DispatchRequest(event="E", payload={"blob": "x" * 100}))
        assert db_session.exec(select(Job)).all() == []

    def test_job_envelope_counts_toward_size_cap(
        self, engine_service: DeliveryEngine, webhooks, db_session: Session
    ):
        """A payload that fits alone but not inside its job is rejected up front."""
        webhooks.register(
            WebhookCreate(endpoint="https://a.example/hook", events=["E"], secret="s")
        )
        payload = {"blob": "x" * 100}
        engine_service.settings.QUEUE_MAX_PAYLOAD_BYTES = 120

        engine_service.queue.validate_payload(payload)
        with pytest.raises(InvalidPayload):
            engine_service.dispatch(DispatchRequest(event="E", payload=payload))
        assert db_session.exec(select(Job)).all() == []

    def test_oversized_notification_job_creates_nothing(
        self, engine_service: DeliveryEngine, notifications, db_session: Session
    ):
        """Rendered notification jobs are size-checked before any record is written."""
        notifications.create_template(
            TemplateCreate(
                name="big", event="E", channels=["in_app"], body="{{ blob }}",
                variables=["blob"],
            )
        )
        notifications.upsert_recipient(RecipientCreate())
        payload = {"blob": "x" * 100}
        engine_service.settings.QUEUE_MAX_PAYLOAD_BYTES = 150

        engine_service.queue.validate_payload(payload)
        with pytest.raises(InvalidPayload):
            engine_service.dispatch(DispatchRequest(event="E", payload=payload))
        assert db_session.exec(select(Job)).all() == []
        assert db_session.exec(select(Notification)).all() == []


# ============================================================================
# Retry Control Tests
# ============================================================================

class TestRetryControl:
    """Tests for manual and bulk retry."""

    def test_retry_delivery(self, engine_service: DeliveryEngine):
        """A failed job is re-enqueued as a fresh job."""
        job_id = _failed_job(engine_service.queue, "push", {"kind": "notification"})

        retry = engine_service.retry_delivery(job_id)

        assert retry.retry_of == job_id
        assert retry.status == JobStatus.WAITING
        assert retry.attempts == 0

    def test_retry_delivery_reopens_notification(
        self, engine_service: DeliveryEngine, db_session: Session
    ):
        """Retrying puts a failed notification back to pending."""
        notifications = NotificationService(db_session)
        user = notifications.upsert_recipient(RecipientCreate())
        notification = Notification(
            user_id=user.id,
            template="t",
            event="E",
            body="hi",
            status=NotificationStatus.FAILED,
            error="boom",
        )
        db_session.add(notification)
        db_session.commit()
        job_id = _failed_job(
            engine_service.queue, "push", {"notification_id": str(notification.id)}
        )

        engine_service.retry_delivery(job_id)

        db_session.refresh(notification)
        assert notification.status == NotificationStatus.PENDING
        assert notification.error is None

    def test_retry_delivery_requires_failed(self, engine_service: DeliveryEngine):
        """Waiting jobs cannot be retried."""
        job_id = engine_service.queue.enqueue("push", {"n": 1})
        with pytest.raises(JobNotRetryable):
            engine_service.retry_delivery(job_id)

    def test_retry_failed_filters_by_channel(self, engine_service: DeliveryEngine):
        """Bulk retry only touches the requested channels, once."""
        push_job = _failed_job(engine_service.queue, "push", {"n": 1})
        _failed_job(engine_service.queue, WEBHOOK_LANE, {"n": 2})

        retried = engine_service.retry_failed(channels=["push"])
        assert [job.retry_of for job in retried] == [push_job]

        assert engine_service.retry_failed(channels=["push"]) == []
        assert len(engine_service.retry_failed(channels=["webhook"])) == 1

    def test_retry_failed_unknown_channel(self, engine_service: DeliveryEngine):
        """Unknown channel names are rejected."""
        with pytest.raises(DeliveryValidationError):
            engine_service.retry_failed(channels=["carrier-pigeon"])


# ============================================================================
# Helpers and Fixtures
# ============================================================================

def _failed_job(queue: QueueService, lane: str, payload: dict) -> UUID:
    """Enqueue, claim and permanently fail a job; returns its id."""
    queue.enqueue(lane, payload)
    job = queue.claim(lane, "test-worker")
    queue.fail(job.id, "test-worker", "boom", retryable=False)
    return job.id


@pytest.fixture
def engine_service(db_session: Session, settings) -> DeliveryEngine:
    """Delivery engine with the default lanes registered."""
    queue = QueueService(db_session, settings)
    queue.ensure_default_lanes()
    return DeliveryEngine(db_session, queue=queue, settings=settings)


@pytest.fixture
def webhooks(db_session: Session, settings) -> WebhookService:
    return WebhookService(db_session, settings)


@pytest.fixture
def notifications(db_session: Session) -> NotificationService:
    return NotificationService(db_session)
