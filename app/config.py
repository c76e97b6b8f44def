"""Environment configuration for the delivery engine."""

import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./delivery.db")
        self.CORS_ORIGINS: list[str] = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ]

        # Worker loop
        self.WORKER_BATCH_SIZE: int = int(os.getenv("WORKER_BATCH_SIZE", "50"))
        self.WORKER_MAX_RETRIES: int = int(os.getenv("WORKER_MAX_RETRIES", "3"))
        self.WORKER_POLL_INTERVAL_SECONDS: int = int(
            os.getenv("WORKER_POLL_INTERVAL_SECONDS", "5")
        )
        self.WORKER_RETRY_DELAY_SECONDS: int = int(
            os.getenv("WORKER_RETRY_DELAY_SECONDS", "1")
        )
        self.WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "5"))

        # Queue defaults
        self.QUEUE_DEFAULT_TIMEOUT_MS: int = int(
            os.getenv("QUEUE_DEFAULT_TIMEOUT_MS", "30000")
        )
        self.QUEUE_MAX_PAYLOAD_BYTES: int = int(
            os.getenv("QUEUE_MAX_PAYLOAD_BYTES", str(256 * 1024))
        )
        self.QUEUE_MAX_BACKOFF_MS: int = int(
            os.getenv("QUEUE_MAX_BACKOFF_MS", str(60 * 60 * 1000))
        )
        # Retry 4xx responses other than 408/429 (off: treat them as permanent)
        self.RETRY_CLIENT_ERRORS: bool = _get_bool("RETRY_CLIENT_ERRORS", False)

        # Webhooks
        self.WEBHOOK_DEFAULT_MAX_ATTEMPTS: int = int(
            os.getenv("WEBHOOK_DEFAULT_MAX_ATTEMPTS", "3")
        )
        self.WEBHOOK_DEFAULT_BASE_DELAY_MS: int = int(
            os.getenv("WEBHOOK_DEFAULT_BASE_DELAY_MS", "5000")
        )
        self.WEBHOOK_USER_AGENT: str = os.getenv(
            "WEBHOOK_USER_AGENT", "DeliveryEngine-Webhook/1.0"
        )

        # Channel providers (empty credentials fall back to simulated delivery)
        self.EXPO_PUSH_URL: str = os.getenv(
            "EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send"
        )
        self.EXPO_ACCESS_TOKEN: str = os.getenv("EXPO_ACCESS_TOKEN", "")
        self.TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.TWILIO_PHONE_NUMBER: str = os.getenv("TWILIO_PHONE_NUMBER", "")
        self.SMTP_HOST: str = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
        self.SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
        self.SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
        self.SMTP_FROM: str = os.getenv("SMTP_FROM", "no-reply@localhost")
        self.SMTP_START_TLS: bool = _get_bool("SMTP_START_TLS", True)
        self.WEB_PUSH_GATEWAY_URL: str = os.getenv("WEB_PUSH_GATEWAY_URL", "")

    def validate(self) -> None:
        """Validate that required environment variables are set."""
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1")
        if self.QUEUE_MAX_BACKOFF_MS <= 0:
            raise ValueError("QUEUE_MAX_BACKOFF_MS must be positive")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    return settings
