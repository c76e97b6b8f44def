"""Browser push transport via a web-push gateway."""

import logging

import httpx

from app.config import Settings, get_settings
from app.transports.base import DeliveryResult, DeliveryTarget
from app.transports.http import HttpTransport

logger = logging.getLogger(__name__)


class WebPushGatewayTransport(HttpTransport):
    """Hands a browser subscription and message to the configured gateway.

    The gateway owns VAPID signing and payload encryption.
    """

    channel = "web_push"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        super().__init__(client, retry_client_errors=self.settings.RETRY_CLIENT_ERRORS)

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        content = target.payload
        result = self.post(
            self.settings.WEB_PUSH_GATEWAY_URL,
            timeout,
            json={
                "subscription": target.recipient,
                "notification": {
                    "title": content.get("title", ""),
                    "body": content.get("body", ""),
                    "data": content.get("data", {}),
                },
            },
        )
        if result.status_code in (404, 410):
            # Subscription expired or was revoked by the browser
            result.retryable = False
        return result
