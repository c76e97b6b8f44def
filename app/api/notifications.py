"""Notification template, recipient, preference and inbox API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlmodel import SQLModel

from app.api.deps import Notifications
from app.models.notification import (
    NotificationListResponse,
    NotificationResponse,
    NotificationStatus,
    PreferencesResponse,
    PreferencesUpdate,
    TemplateCreate,
    TemplateResponse,
    TemplateUpdate,
)
from app.models.recipient import RecipientCreate, RecipientResponse
from app.services.errors import (
    DeliveryValidationError,
    NotificationNotFound,
    RecipientNotFound,
    TemplateNotFound,
)

router = APIRouter(tags=["Notifications"])


class BatchDeleteRequest(SQLModel):
    """Schema for batch notification deletion."""

    notification_ids: list[UUID]


class CountResponse(SQLModel):
    """Schema for bulk operation results."""

    count: int


def _recipient_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Recipient not found",
    )


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------


@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def create_template_endpoint(
    notifications: Notifications,
    data: TemplateCreate,
) -> TemplateResponse:
    """Create a notification template."""
    try:
        return TemplateResponse.model_validate(notifications.create_template(data))
    except DeliveryValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )


@router.get("/templates", response_model=list[TemplateResponse])
def list_templates_endpoint(notifications: Notifications) -> list[TemplateResponse]:
    """List notification templates."""
    return [TemplateResponse.model_validate(t) for t in notifications.list_templates()]


@router.get("/templates/{name}", response_model=TemplateResponse)
def get_template_endpoint(notifications: Notifications, name: str) -> TemplateResponse:
    """Get a template by name."""
    try:
        return TemplateResponse.model_validate(
            notifications.get_template(name, active_only=False)
        )
    except TemplateNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found",
        )


@router.put("/templates/{name}", response_model=TemplateResponse)
def update_template_endpoint(
    notifications: Notifications,
    name: str,
    data: TemplateUpdate,
) -> TemplateResponse:
    """Update a template; its version is bumped."""
    try:
        return TemplateResponse.model_validate(notifications.update_template(name, data))
    except TemplateNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Template not found",
        )
    except DeliveryValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )


# -----------------------------------------------------------------------------
# Recipients and preferences
# -----------------------------------------------------------------------------


@router.post("/recipients", response_model=RecipientResponse, status_code=status.HTTP_201_CREATED)
def upsert_recipient_endpoint(
    notifications: Notifications,
    data: RecipientCreate,
) -> RecipientResponse:
    """Register or update a recipient's contact details."""
    return RecipientResponse.model_validate(notifications.upsert_recipient(data))


@router.get("/recipients/{user_id}", response_model=RecipientResponse)
def get_recipient_endpoint(notifications: Notifications, user_id: UUID) -> RecipientResponse:
    """Get a recipient."""
    try:
        return RecipientResponse.model_validate(notifications.get_recipient(user_id))
    except RecipientNotFound:
        raise _recipient_not_found()


@router.get("/recipients/{user_id}/preferences", response_model=PreferencesResponse)
def get_preferences_endpoint(
    notifications: Notifications,
    user_id: UUID,
) -> PreferencesResponse:
    """Get notification preferences (all channels enabled by default)."""
    try:
        notifications.get_recipient(user_id)
    except RecipientNotFound:
        raise _recipient_not_found()
    return PreferencesResponse.model_validate(notifications.get_preferences(user_id))


@router.put("/recipients/{user_id}/preferences", response_model=PreferencesResponse)
def update_preferences_endpoint(
    notifications: Notifications,
    user_id: UUID,
    data: PreferencesUpdate,
) -> PreferencesResponse:
    """Set channel switches and quiet hours."""
    try:
        return PreferencesResponse.model_validate(
            notifications.update_preferences(user_id, data)
        )
    except RecipientNotFound:
        raise _recipient_not_found()


# -----------------------------------------------------------------------------
# Inbox
# -----------------------------------------------------------------------------


@router.get("/recipients/{user_id}/notifications", response_model=NotificationListResponse)
def list_notifications_endpoint(
    notifications: Notifications,
    user_id: UUID,
    status_filter: NotificationStatus | None = Query(
        default=None, alias="status", description="Filter by status"
    ),
    unread_only: bool = Query(default=False, description="Only unread notifications"),
    since: datetime | None = Query(default=None, description="Created at or after"),
    until: datetime | None = Query(default=None, description="Created before"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum notifications to return"),
    offset: int = Query(default=0, ge=0, description="Number of notifications to skip"),
) -> NotificationListResponse:
    """A recipient's notification history, newest first."""
    items, total = notifications.history(
        user_id,
        status=status_filter,
        unread_only=unread_only,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in items],
        total=total,
    )


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_read_endpoint(
    notifications: Notifications,
    notification_id: UUID,
) -> NotificationResponse:
    """Acknowledge one notification."""
    try:
        return NotificationResponse.model_validate(notifications.mark_as_read(notification_id))
    except NotificationNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )


@router.post("/recipients/{user_id}/notifications/read-all", response_model=CountResponse)
def mark_all_read_endpoint(notifications: Notifications, user_id: UUID) -> CountResponse:
    """Acknowledge every unread notification of a recipient."""
    return CountResponse(count=notifications.mark_all_as_read(user_id))


@router.post("/recipients/{user_id}/notifications/delete", response_model=CountResponse)
def batch_delete_endpoint(
    notifications: Notifications,
    user_id: UUID,
    data: BatchDeleteRequest,
) -> CountResponse:
    """Delete a batch of a recipient's notifications."""
    return CountResponse(
        count=notifications.delete_notifications(user_id, data.notification_ids)
    )
