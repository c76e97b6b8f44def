"""Channel transports.

Transports:
- webhook.py: Signed HTTP POST to registered endpoints
- push.py: Expo push API
- sms.py: Twilio REST API
- email.py: SMTP via aiosmtplib
- web_push.py: Web-push gateway
- in_app.py: Inbox visibility in the notifications table
- simulated.py: Log-only stand-in for unconfigured providers
"""

import logging
from collections.abc import Callable

import httpx
from sqlmodel import Session

from app.config import Settings, get_settings
from app.models.notification import NotificationChannel
from app.transports.base import DeliveryResult, DeliveryTarget, Transport
from app.transports.email import SmtpEmailTransport
from app.transports.in_app import InAppTransport
from app.transports.push import ExpoPushTransport
from app.transports.simulated import SimulatedTransport
from app.transports.sms import TwilioSmsTransport
from app.transports.web_push import WebPushGatewayTransport
from app.transports.webhook import WebhookTransport

logger = logging.getLogger(__name__)


def build_transports(
    session_factory: Callable[[], Session],
    settings: Settings | None = None,
    http_client: httpx.Client | None = None,
) -> dict[str, Transport]:
    """Map every channel (and ``webhook``) to its transport.

    Channels whose provider is not configured get a SimulatedTransport.
    """
    settings = settings or get_settings()

    transports: dict[str, Transport] = {
        "webhook": WebhookTransport(settings, http_client),
        NotificationChannel.IN_APP.value: InAppTransport(session_factory),
    }

    if settings.EXPO_ACCESS_TOKEN:
        transports[NotificationChannel.PUSH.value] = ExpoPushTransport(settings, http_client)
    if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
        transports[NotificationChannel.SMS.value] = TwilioSmsTransport(settings, http_client)
    if settings.SMTP_HOST:
        transports[NotificationChannel.EMAIL.value] = SmtpEmailTransport(settings)
    if settings.WEB_PUSH_GATEWAY_URL:
        transports[NotificationChannel.WEB_PUSH.value] = WebPushGatewayTransport(
            settings, http_client
        )

    for channel in NotificationChannel:
        if channel.value not in transports:
            logger.info(
                f"No provider configured for {channel.value}, using simulated delivery"
            )
            transports[channel.value] = SimulatedTransport(channel.value)

    return transports


__all__ = [
    "DeliveryResult",
    "DeliveryTarget",
    "Transport",
    "WebhookTransport",
    "ExpoPushTransport",
    "TwilioSmsTransport",
    "SmtpEmailTransport",
    "WebPushGatewayTransport",
    "InAppTransport",
    "SimulatedTransport",
    "build_transports",
]
