"""Mobile push transport via the Expo push API."""

import json
import logging

import httpx

from app.config import Settings, get_settings
from app.transports.base import DeliveryResult, DeliveryTarget
from app.transports.http import HttpTransport

logger = logging.getLogger(__name__)


def ticket_error(response_body: str | None) -> str | None:
    """Error message of a rejected Expo push ticket, if any."""
    if not response_body:
        return None
    try:
        ticket = json.loads(response_body).get("data")
    except (ValueError, AttributeError):
        return None
    if isinstance(ticket, list):
        ticket = ticket[0] if ticket else None
    if isinstance(ticket, dict) and ticket.get("status") == "error":
        return ticket.get("message") or "Push ticket rejected"
    return None


class ExpoPushTransport(HttpTransport):
    """Sends one push message to one Expo push token."""

    channel = "push"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        super().__init__(client, retry_client_errors=self.settings.RETRY_CLIENT_ERRORS)

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        content = target.payload
        message = {
            "to": target.recipient,
            "title": content.get("title", ""),
            "body": content.get("body", ""),
            "data": content.get("data", {}),
            "sound": "default",
        }
        headers = {"Accept": "application/json"}
        if self.settings.EXPO_ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {self.settings.EXPO_ACCESS_TOKEN}"

        result = self.post(self.settings.EXPO_PUSH_URL, timeout, json=message, headers=headers)
        if not result.success:
            return result

        # Expo reports per-ticket errors inside a 200 response
        error = ticket_error(result.response_body)
        if error is not None:
            logger.warning(
                "Push ticket rejected",
                extra={"event": target.event, "error": error},
            )
            return DeliveryResult.failed(
                error,
                status_code=result.status_code,
                retryable=False,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
            )
        return result
