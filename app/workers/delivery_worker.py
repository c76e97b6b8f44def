"""Delivery executor: the job handler for every delivery lane.

Rebuilds the DeliveryTarget from the job payload and hands it to the
channel transport. Webhook secrets and headers are loaded at send time,
so a registration disabled after dispatch stops receiving deliveries.
"""

import logging
from collections.abc import Callable, Mapping
from uuid import UUID

from sqlmodel import Session

from app.models.webhook import WebhookRegistration
from app.services.errors import PermanentDeliveryError
from app.transports.base import DeliveryResult, DeliveryTarget, Transport
from app.workers.queue_worker import ClaimedJob

logger = logging.getLogger(__name__)


class DeliveryExecutor:
    """Callable handler dispatching jobs to transports by channel."""

    def __init__(
        self,
        transports: Mapping[str, Transport],
        session_factory: Callable[[], Session],
    ) -> None:
        self.transports = transports
        self.session_factory = session_factory

    def __call__(self, job: ClaimedJob) -> DeliveryResult:
        target = self.build_target(job)
        transport = self.transports.get(target.channel)
        if transport is None:
            raise PermanentDeliveryError(f"No transport for channel {target.channel}")

        logger.debug(
            "Executing delivery",
            extra={"job_id": str(job.id), "channel": target.channel, "attempt": job.attempts},
        )
        return transport.send(target, job.timeout_seconds)

    def build_target(self, job: ClaimedJob) -> DeliveryTarget:
        """Turn a job payload into a target.

        Raises:
            PermanentDeliveryError: payload is malformed or the webhook
                registration is missing or inactive
        """
        kind = job.payload.get("kind")
        if kind == "webhook":
            return self._webhook_target(job)
        if kind == "notification":
            if not job.payload.get("channel") or job.payload.get("recipient") is None:
                raise PermanentDeliveryError("Notification job without channel or recipient")
            return DeliveryTarget(
                channel=job.payload["channel"],
                recipient=job.payload["recipient"],
                event=job.payload.get("event") or "",
                payload=dict(job.payload.get("content") or {}),
                options={"delivery_id": str(job.id)},
            )
        raise PermanentDeliveryError(f"Unknown job kind: {kind}")

    def _webhook_target(self, job: ClaimedJob) -> DeliveryTarget:
        registration_id = job.payload.get("registration_id")
        if not registration_id:
            raise PermanentDeliveryError("Webhook job without registration")

        with self.session_factory() as session:
            registration = session.get(WebhookRegistration, UUID(str(registration_id)))
            if registration is None:
                raise PermanentDeliveryError(f"Webhook {registration_id} not found")
            if not registration.is_active:
                raise PermanentDeliveryError(f"Webhook {registration_id} is inactive")

            return DeliveryTarget(
                channel="webhook",
                recipient=registration.endpoint,
                event=job.payload.get("event") or "",
                payload=job.payload.get("payload") or {},
                options={
                    "registration_id": str(registration.id),
                    "secret": registration.secret,
                    "headers": dict(registration.headers or {}),
                    "delivery_id": str(job.id),
                },
            )
