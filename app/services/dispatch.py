"""Event dispatch: resolve targets and enqueue one job per target.

Dispatch only enqueues; delivery happens later in the workers. Input is
validated up front so a rejected dispatch leaves nothing behind in the
job store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlmodel import Session

from app.config import Settings, get_settings
from app.models.dispatch import DispatchRequest, DispatchResult
from app.models.job import Job, JobOptions
from app.models.notification import (
    CHANNEL_LANES,
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationTemplate,
)
from app.models.recipient import Recipient
from app.models.webhook import WebhookRegistration
from app.services.errors import DeliveryValidationError
from app.services.notifications import NotificationService
from app.services.queue import WEBHOOK_LANE, QueueService
from app.services.resolver import TargetResolver
from app.services.templates import render
from app.transports.base import DeliveryTarget

logger = logging.getLogger(__name__)

WEBHOOK_CHANNEL = "webhook"

# Same rendered length as a real id, for sizing job payloads before insert
PLACEHOLDER_ID = UUID(int=0)


@dataclass
class NotificationPlan:
    """Rendered notification and its targets, not yet persisted."""

    template: NotificationTemplate
    recipient: Recipient
    title: str
    body: str
    data: dict[str, Any]
    targets: list[DeliveryTarget]


def _webhook_payload(request: DispatchRequest, registration_id: UUID) -> dict[str, Any]:
    return {
        "kind": "webhook",
        "event": request.event,
        "registration_id": str(registration_id),
        "payload": request.payload,
    }


def _notification_payload(
    request: DispatchRequest,
    recipient: Recipient,
    target: DeliveryTarget,
    notification_id: UUID,
) -> dict[str, Any]:
    return {
        "kind": "notification",
        "channel": target.channel,
        "notification_id": str(notification_id),
        "user_id": str(recipient.id),
        "recipient": target.recipient,
        "event": request.event,
        "content": {
            **target.payload,
            "notification_id": str(notification_id),
        },
    }


def _audience_from_payload(payload: dict[str, Any]) -> list[UUID] | None:
    raw = payload.get("user_id", payload.get("userId"))
    if raw is None:
        return None
    try:
        return [raw if isinstance(raw, UUID) else UUID(str(raw))]
    except ValueError as e:
        raise DeliveryValidationError(f"Invalid user id in payload: {raw}") from e


class DeliveryEngine:
    """Entry point for dispatching events and retrying failed deliveries."""

    def __init__(
        self,
        session: Session,
        queue: QueueService | None = None,
        resolver: TargetResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.queue = queue or QueueService(session, self.settings)
        self.resolver = resolver or TargetResolver(session)
        self.notifications = NotificationService(session)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, request: DispatchRequest, now: datetime | None = None) -> DispatchResult:
        """Fan an event out to webhooks and notification channels.

        Every job payload is built and size-checked before anything is
        written, so the cap applies to what actually lands in the queue.

        Raises:
            InvalidPayload: payload is not a JSON object or a job payload
                built from it is too large
            TemplateNotFound: an explicit template does not exist
            DeliveryValidationError: malformed audience
        """
        now = now or datetime.utcnow()
        self.queue.validate_payload(request.payload)
        templates = self._templates_for(request)
        recipients = self._audience(request) if templates else []

        registrations = self.resolver.webhook_registrations(request.event)
        if registrations:
            self.queue.validate_payload(_webhook_payload(request, PLACEHOLDER_ID))

        plans = []
        for template in templates:
            for recipient in recipients:
                plan = self._plan_notification(request, template, recipient, now)
                if plan is None:
                    continue
                for target in plan.targets:
                    self.queue.validate_payload(
                        _notification_payload(request, recipient, target, PLACEHOLDER_ID)
                    )
                plans.append(plan)

        result = DispatchResult(event=request.event)
        self._enqueue_webhooks(request, registrations, result, now)
        for plan in plans:
            self._enqueue_notification(request, plan, result, now)

        logger.info(
            "Event dispatched",
            extra={
                "event": request.event,
                "webhook_jobs": len(result.webhook_job_ids),
                "notification_jobs": len(result.notification_job_ids),
                "errors": len(result.errors),
            },
        )
        return result

    def _templates_for(self, request: DispatchRequest) -> list[NotificationTemplate]:
        if request.template is not None:
            return [self.notifications.get_template(request.template)]
        return self.notifications.templates_for_event(request.event)

    def _audience(self, request: DispatchRequest) -> list[Recipient]:
        user_ids = request.user_ids
        if user_ids is None:
            user_ids = _audience_from_payload(request.payload)
        return self.notifications.active_recipients(user_ids)

    def _job_options(self, request: DispatchRequest, **overrides: Any) -> JobOptions:
        return JobOptions(
            priority=request.priority.job_priority,
            delay_ms=request.delay_ms,
            **overrides,
        )

    def _enqueue_webhooks(
        self,
        request: DispatchRequest,
        registrations: list[WebhookRegistration],
        result: DispatchResult,
        now: datetime,
    ) -> None:
        if not registrations:
            return

        payloads = []
        options = []
        for registration in registrations:
            policy = registration.policy()
            payloads.append(_webhook_payload(request, registration.id))
            options.append(
                self._job_options(
                    request,
                    max_attempts=policy.max_attempts,
                    base_delay_ms=policy.base_delay_ms,
                )
            )

        for item in self.queue.enqueue_bulk(WEBHOOK_LANE, payloads, options, now=now):
            if item.ok:
                result.webhook_job_ids.append(item.job_id)
            else:
                registration = registrations[item.index]
                result.errors.append(f"webhook {registration.id}: {item.error}")

    def _plan_notification(
        self,
        request: DispatchRequest,
        template: NotificationTemplate,
        recipient: Recipient,
        now: datetime,
    ) -> NotificationPlan | None:
        title = render(template.title, request.payload)
        body = render(template.body, request.payload)
        data = {**(template.data or {}), **request.payload}

        requested = [c.value for c in request.channels] if request.channels is not None else None
        targets = self.resolver.notification_targets(
            template,
            recipient,
            request.event,
            {"title": title, "body": body, "data": data},
            requested=requested,
            now=now,
        )
        if not targets:
            logger.debug(
                "No deliverable channels for recipient",
                extra={"user_id": str(recipient.id), "template": template.name},
            )
            return None
        return NotificationPlan(template, recipient, title, body, data, targets)

    def _enqueue_notification(
        self,
        request: DispatchRequest,
        plan: NotificationPlan,
        result: DispatchResult,
        now: datetime,
    ) -> None:
        notification = Notification(
            user_id=plan.recipient.id,
            template=plan.template.name,
            event=request.event,
            title=plan.title,
            body=plan.body,
            data=plan.data,
            channels=sorted({t.channel for t in plan.targets}),
            priority=request.priority,
            created_at=now,
        )
        self.session.add(notification)
        self.session.commit()
        self.session.refresh(notification)
        result.notification_ids.append(notification.id)

        enqueued = 0
        for target in plan.targets:
            channel = NotificationChannel(target.channel)
            payload = _notification_payload(request, plan.recipient, target, notification.id)
            [item] = self.queue.enqueue_bulk(
                CHANNEL_LANES[channel], [payload], self._job_options(request), now=now
            )
            if item.ok:
                result.notification_job_ids.append(item.job_id)
                enqueued += 1
            else:
                result.errors.append(
                    f"notification {notification.id} ({channel.value}): {item.error}"
                )

        if enqueued == 0:
            notification.status = NotificationStatus.FAILED
            notification.error = "No delivery job could be enqueued"
            self.session.add(notification)
            self.session.commit()

    # -------------------------------------------------------------------------
    # Retry control
    # -------------------------------------------------------------------------

    def retry_delivery(self, job_id: UUID) -> Job:
        """Re-enqueue one terminally failed delivery job with attempts reset.

        Raises:
            JobNotFound: no such job
            JobNotRetryable: job is not in ``failed``
        """
        retry = self.queue.requeue_failed(job_id)
        self._reopen_notification(retry)
        return retry

    def retry_failed(
        self,
        channels: list[str] | None = None,
        older_than: datetime | None = None,
        newer_than: datetime | None = None,
        limit: int | None = 100,
    ) -> list[Job]:
        """Re-enqueue failed delivery jobs matching the filters."""
        lanes = self._lanes_for(channels)
        retried = []
        for job in self.queue.failed_jobs(lanes, older_than, newer_than, limit):
            retry = self.queue.requeue_failed(job.id)
            self._reopen_notification(retry)
            retried.append(retry)

        logger.info(
            "Failed deliveries re-enqueued",
            extra={"channels": channels, "count": len(retried)},
        )
        return retried

    def _lanes_for(self, channels: list[str] | None) -> list[str]:
        if channels is None:
            return [WEBHOOK_LANE, *CHANNEL_LANES.values()]
        lanes = []
        for channel in channels:
            if channel == WEBHOOK_CHANNEL:
                lanes.append(WEBHOOK_LANE)
                continue
            try:
                lanes.append(CHANNEL_LANES[NotificationChannel(channel)])
            except ValueError as e:
                raise DeliveryValidationError(f"Unknown channel: {channel}") from e
        return lanes

    def _reopen_notification(self, job: Job) -> None:
        notification_id = (job.payload or {}).get("notification_id")
        if not notification_id:
            return
        notification = self.session.get(Notification, UUID(notification_id))
        if notification is not None and notification.status == NotificationStatus.FAILED:
            notification.status = NotificationStatus.PENDING
            notification.error = None
            self.session.add(notification)
            self.session.commit()
