"""Webhook registration API endpoints."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import Webhooks
from app.models.webhook import (
    WebhookCreate,
    WebhookListResponse,
    WebhookResponse,
    WebhookUpdate,
)
from app.services.errors import InvalidEndpoint, RegistrationNotFound

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
def register_webhook_endpoint(
    webhooks: Webhooks,
    data: WebhookCreate,
) -> WebhookResponse:
    """Register an endpoint for one or more events."""
    try:
        registration = webhooks.register(data)
        return WebhookResponse.model_validate(registration)
    except InvalidEndpoint as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )


@router.get("", response_model=WebhookListResponse)
def list_webhooks_endpoint(
    webhooks: Webhooks,
    active_only: bool = Query(default=False, description="Only active registrations"),
) -> WebhookListResponse:
    """List webhook registrations."""
    registrations = webhooks.list(active_only=active_only)
    return WebhookListResponse(
        webhooks=[WebhookResponse.model_validate(r) for r in registrations],
        total=len(registrations),
    )


@router.get("/{registration_id}", response_model=WebhookResponse)
def get_webhook_endpoint(
    webhooks: Webhooks,
    registration_id: UUID,
) -> WebhookResponse:
    """Get a webhook registration by ID."""
    try:
        return WebhookResponse.model_validate(webhooks.get(registration_id))
    except RegistrationNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        )


@router.patch("/{registration_id}", response_model=WebhookResponse)
def update_webhook_endpoint(
    webhooks: Webhooks,
    registration_id: UUID,
    data: WebhookUpdate,
) -> WebhookResponse:
    """Toggle a registration or change its events, headers or retry policy."""
    try:
        registration = webhooks.update(registration_id, data)
        return WebhookResponse.model_validate(registration)
    except RegistrationNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        )
