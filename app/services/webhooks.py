"""Webhook registration management.

Registrations are soft-disabled rather than deleted so delivery history
stays attributable.
"""

import logging
from datetime import datetime
from uuid import UUID

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from sqlmodel import Session, select

from app.config import Settings, get_settings
from app.models.webhook import (
    RetryPolicySchema,
    WebhookCreate,
    WebhookRegistration,
    WebhookUpdate,
)
from app.services.errors import InvalidEndpoint, RegistrationNotFound

logger = logging.getLogger(__name__)

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


def validate_endpoint(endpoint: str) -> str:
    """Accept absolute http(s) URLs only."""
    try:
        url = _URL_ADAPTER.validate_python(endpoint)
    except ValidationError as e:
        raise InvalidEndpoint(f"Invalid webhook URL: {endpoint}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidEndpoint(f"Invalid webhook URL: {endpoint}")
    return endpoint


class WebhookService:
    """CRUD for webhook registrations."""

    def __init__(self, session: Session, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def register(self, data: WebhookCreate) -> WebhookRegistration:
        """Create a registration.

        Raises:
            InvalidEndpoint: endpoint is not an http(s) URL
        """
        validate_endpoint(data.endpoint)
        policy = data.retry_policy or RetryPolicySchema(
            max_attempts=self.settings.WEBHOOK_DEFAULT_MAX_ATTEMPTS,
            base_delay_ms=self.settings.WEBHOOK_DEFAULT_BASE_DELAY_MS,
        )

        registration = WebhookRegistration(
            endpoint=data.endpoint,
            events=list(dict.fromkeys(data.events)),
            secret=data.secret,
            retry_policy=policy.model_dump(),
            headers=dict(data.headers or {}),
        )
        self.session.add(registration)
        self.session.commit()
        self.session.refresh(registration)

        logger.info(
            "Webhook registered",
            extra={
                "registration_id": str(registration.id),
                "endpoint": registration.endpoint,
                "events": registration.events,
            },
        )
        return registration

    def get(self, registration_id: UUID) -> WebhookRegistration:
        registration = self.session.get(WebhookRegistration, registration_id)
        if registration is None:
            raise RegistrationNotFound(f"Webhook {registration_id} not found")
        return registration

    def list(self, active_only: bool = False) -> list[WebhookRegistration]:
        statement = select(WebhookRegistration).order_by(WebhookRegistration.created_at)
        if active_only:
            statement = statement.where(WebhookRegistration.is_active == True)  # noqa: E712
        return list(self.session.exec(statement).all())

    def update(self, registration_id: UUID, data: WebhookUpdate) -> WebhookRegistration:
        """Apply a partial update (activation, subscriptions, policy, headers)."""
        registration = self.get(registration_id)

        if data.is_active is not None:
            registration.is_active = data.is_active
        if data.events is not None:
            registration.events = list(dict.fromkeys(data.events))
        if data.retry_policy is not None:
            registration.retry_policy = data.retry_policy.model_dump()
        if data.headers is not None:
            registration.headers = dict(data.headers)
        registration.updated_at = datetime.utcnow()

        self.session.add(registration)
        self.session.commit()
        self.session.refresh(registration)

        logger.info(
            "Webhook updated",
            extra={
                "registration_id": str(registration.id),
                "is_active": registration.is_active,
            },
        )
        return registration

    def set_active(self, registration_id: UUID, is_active: bool) -> WebhookRegistration:
        return self.update(registration_id, WebhookUpdate(is_active=is_active))
