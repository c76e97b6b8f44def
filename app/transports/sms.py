"""SMS transport via the Twilio REST API."""

import logging

import httpx

from app.config import Settings, get_settings
from app.transports.base import DeliveryResult, DeliveryTarget
from app.transports.http import HttpTransport

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class TwilioSmsTransport(HttpTransport):
    """Sends the notification body as a text message."""

    channel = "sms"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        super().__init__(client, retry_client_errors=self.settings.RETRY_CLIENT_ERRORS)

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        return self.post(
            TWILIO_MESSAGES_URL.format(sid=self.settings.TWILIO_ACCOUNT_SID),
            timeout,
            data={
                "To": target.recipient,
                "From": self.settings.TWILIO_PHONE_NUMBER,
                "Body": target.payload.get("body", ""),
            },
            auth=(self.settings.TWILIO_ACCOUNT_SID, self.settings.TWILIO_AUTH_TOKEN),
        )
