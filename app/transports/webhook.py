"""Signed webhook POST transport."""

import logging

import httpx

from app.config import Settings, get_settings
from app.services.signing import canonical_bytes, sign
from app.transports.base import DeliveryResult, DeliveryTarget
from app.transports.http import HttpTransport

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"


class WebhookTransport(HttpTransport):
    """POSTs the event payload to a registration's endpoint.

    The body is the canonical JSON encoding of the payload and the
    signature covers exactly those bytes. Registration headers are sent
    too but cannot replace the signature or event headers.

    Target options:
        secret: HMAC secret of the registration
        headers: Static headers of the registration
        delivery_id: Job id, echoed as X-Webhook-Delivery
    """

    channel = "webhook"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        super().__init__(client, retry_client_errors=self.settings.RETRY_CLIENT_ERRORS)

    def build_request(self, target: DeliveryTarget) -> tuple[bytes, dict[str, str]]:
        """Body and headers for a target."""
        body = canonical_bytes(target.payload)
        reserved = {
            "Content-Type": "application/json",
            "User-Agent": self.settings.WEBHOOK_USER_AGENT,
            SIGNATURE_HEADER: sign(body, target.options["secret"]),
            EVENT_HEADER: target.event,
        }
        if target.options.get("delivery_id"):
            reserved[DELIVERY_HEADER] = str(target.options["delivery_id"])

        # Header names are case-insensitive
        reserved_names = {name.lower() for name in (*reserved, DELIVERY_HEADER)}
        headers = {
            name: value
            for name, value in (target.options.get("headers") or {}).items()
            if name.lower() not in reserved_names
        }
        headers.update(reserved)
        return body, headers

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        body, headers = self.build_request(target)
        result = self.post(target.recipient, timeout, content=body, headers=headers)

        log = logger.info if result.success else logger.warning
        log(
            "Webhook delivered successfully" if result.success else "Webhook delivery failed",
            extra={
                "registration_id": target.options.get("registration_id"),
                "event": target.event,
                "status_code": result.status_code,
                "response_time_ms": result.response_time_ms,
            },
        )
        return result
