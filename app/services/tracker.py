"""Delivery status tracking: the append-only attempt log and its metrics."""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from app.models.delivery_attempt import AttemptOutcome, DeliveryAttempt, DeliveryMetrics
from app.models.job import Job, JobStatus
from app.models.notification import Notification

logger = logging.getLogger(__name__)

# Channels where the recipient can acknowledge a read
READ_TRACKED_CHANNELS = ("push", "in_app")


class DeliveryTracker:
    """Records delivery attempts and answers history/metrics queries."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        job_id: UUID,
        channel: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        http_status: int | None = None,
        error_detail: str | None = None,
        event: str | None = None,
        registration_id: UUID | None = None,
        notification_id: UUID | None = None,
        timestamp: datetime | None = None,
    ) -> DeliveryAttempt:
        """Append one attempt record. Records are never updated."""
        attempt = DeliveryAttempt(
            job_id=job_id,
            channel=channel,
            attempt_number=attempt_number,
            outcome=outcome,
            http_status=http_status,
            error_detail=error_detail[:500] if error_detail else None,
            event=event,
            registration_id=registration_id,
            notification_id=notification_id,
            timestamp=timestamp or datetime.utcnow(),
        )
        self.session.add(attempt)
        self.session.commit()
        self.session.refresh(attempt)

        logger.debug(
            "Delivery attempt recorded",
            extra={
                "job_id": str(job_id),
                "channel": channel,
                "attempt": attempt_number,
                "outcome": outcome.value,
            },
        )
        return attempt

    def _filtered(
        self,
        statement,
        job_id: UUID | None = None,
        registration_id: UUID | None = None,
        notification_id: UUID | None = None,
        outcome: AttemptOutcome | None = None,
        channel: str | None = None,
        event: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ):
        if event is not None:
            statement = statement.where(DeliveryAttempt.event == event)
        if job_id is not None:
            statement = statement.where(DeliveryAttempt.job_id == job_id)
        if registration_id is not None:
            statement = statement.where(DeliveryAttempt.registration_id == registration_id)
        if notification_id is not None:
            statement = statement.where(DeliveryAttempt.notification_id == notification_id)
        if outcome is not None:
            statement = statement.where(DeliveryAttempt.outcome == outcome)
        if channel is not None:
            statement = statement.where(DeliveryAttempt.channel == channel)
        if since is not None:
            statement = statement.where(DeliveryAttempt.timestamp >= since)
        if until is not None:
            statement = statement.where(DeliveryAttempt.timestamp < until)
        return statement

    def history(
        self,
        job_id: UUID | None = None,
        registration_id: UUID | None = None,
        notification_id: UUID | None = None,
        outcome: AttemptOutcome | None = None,
        channel: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryAttempt], int]:
        """Attempts matching the filters, newest first.

        Returns:
            (page of attempts, total matching)
        """
        filters = dict(
            job_id=job_id,
            registration_id=registration_id,
            notification_id=notification_id,
            outcome=outcome,
            channel=channel,
            since=since,
            until=until,
        )
        total = self.session.exec(
            self._filtered(select(func.count()).select_from(DeliveryAttempt), **filters)
        ).one()
        attempts = self.session.exec(
            self._filtered(select(DeliveryAttempt), **filters)
            .order_by(DeliveryAttempt.timestamp.desc(), DeliveryAttempt.attempt_number.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return list(attempts), total

    def metrics(
        self,
        channel: str | None = None,
        event: str | None = None,
        registration_id: UUID | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> DeliveryMetrics:
        """Aggregate attempt counts plus delivery and read rates.

        ``delivery_rate`` is jobs with a successful attempt over jobs
        attempted; ``read_rate`` is read notifications over notifications
        delivered on push or in-app. Both are percentages and 0 when the
        denominator is empty.
        """
        filters = dict(
            channel=channel,
            event=event,
            registration_id=registration_id,
            since=since,
            until=until,
        )

        by_outcome = {
            AttemptOutcome(outcome).value: count
            for outcome, count in self.session.exec(
                self._filtered(
                    select(DeliveryAttempt.outcome, func.count()).group_by(
                        DeliveryAttempt.outcome
                    ),
                    **filters,
                )
            ).all()
        }
        by_channel = {
            name: count
            for name, count in self.session.exec(
                self._filtered(
                    select(DeliveryAttempt.channel, func.count()).group_by(
                        DeliveryAttempt.channel
                    ),
                    **filters,
                )
            ).all()
        }

        attempted = set(
            self.session.exec(
                self._filtered(select(DeliveryAttempt.job_id).distinct(), **filters)
            ).all()
        )
        delivered = set(
            self.session.exec(
                self._filtered(
                    select(DeliveryAttempt.job_id).distinct(),
                    outcome=AttemptOutcome.SUCCESS,
                    **filters,
                )
            ).all()
        )
        failed: set[UUID] = set()
        if attempted:
            failed = set(
                self.session.exec(
                    select(Job.id)
                    .where(Job.id.in_(attempted - delivered))
                    .where(Job.status == JobStatus.FAILED)
                ).all()
            )

        delivery_rate = len(delivered) / len(attempted) * 100 if attempted else 0.0

        notification_ids = set(
            self.session.exec(
                self._filtered(
                    select(DeliveryAttempt.notification_id)
                    .where(DeliveryAttempt.notification_id.is_not(None))
                    .where(DeliveryAttempt.channel.in_(READ_TRACKED_CHANNELS))
                    .distinct(),
                    outcome=AttemptOutcome.SUCCESS,
                    **filters,
                )
            ).all()
        )
        read_rate = 0.0
        if notification_ids:
            read = self.session.exec(
                select(func.count())
                .select_from(Notification)
                .where(Notification.id.in_(notification_ids))
                .where(Notification.read_at.is_not(None))
            ).one()
            read_rate = read / len(notification_ids) * 100

        return DeliveryMetrics(
            total=sum(by_outcome.values()),
            by_outcome=by_outcome,
            by_channel=by_channel,
            attempted_jobs=len(attempted),
            delivered_jobs=len(delivered),
            failed_jobs=len(failed),
            delivery_rate=round(delivery_rate, 2),
            read_rate=round(read_rate, 2),
        )
