"""Email transport over SMTP using aiosmtplib."""

import asyncio
import logging
import time
from email.message import EmailMessage

import aiosmtplib

from app.config import Settings, get_settings
from app.transports.base import DeliveryResult, DeliveryTarget

logger = logging.getLogger(__name__)


class SmtpEmailTransport:
    """Sends the rendered notification as a plain-text email.

    aiosmtplib is asynchronous; workers are threads without an event loop,
    so each send runs to completion in its own loop.
    """

    channel = "email"

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def build_message(self, target: DeliveryTarget) -> EmailMessage:
        content = target.payload
        message = EmailMessage()
        message["From"] = self.settings.SMTP_FROM
        message["To"] = target.recipient
        message["Subject"] = content.get("title") or target.event
        message.set_content(content.get("body", ""))
        return message

    async def _send(self, message: EmailMessage, timeout: float) -> None:
        smtp = aiosmtplib.SMTP(
            hostname=self.settings.SMTP_HOST,
            port=self.settings.SMTP_PORT,
            start_tls=self.settings.SMTP_START_TLS,
            timeout=timeout,
        )
        async with smtp:
            if self.settings.SMTP_USERNAME:
                await smtp.login(self.settings.SMTP_USERNAME, self.settings.SMTP_PASSWORD)
            await smtp.send_message(message)

    def send(self, target: DeliveryTarget, timeout: float) -> DeliveryResult:
        start_time = time.monotonic()
        message = self.build_message(target)
        try:
            asyncio.run(self._send(message, timeout))
        except aiosmtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return DeliveryResult.failed(f"SMTP authentication failed: {e}"[:500], retryable=False)
        except aiosmtplib.SMTPRecipientsRefused as e:
            logger.warning(f"All recipients refused: {e}")
            return DeliveryResult.failed(f"Recipient refused: {e}"[:500], retryable=False)
        except aiosmtplib.SMTPException as e:
            logger.warning(f"SMTP error: {e}")
            return DeliveryResult.failed(f"SMTP error: {e}"[:500])
        except OSError as e:
            logger.warning(f"SMTP connection failed: {e}")
            return DeliveryResult.failed(f"SMTP connection failed: {e}"[:500])

        response_time_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Email sent successfully",
            extra={"event": target.event, "response_time_ms": response_time_ms},
        )
        return DeliveryResult.ok(response_time_ms=response_time_ms)
