"""Notification templates, recipients, preferences and inbox operations."""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from app.models.notification import (
    Notification,
    NotificationPreference,
    NotificationStatus,
    NotificationTemplate,
    PreferencesUpdate,
    TemplateCreate,
    TemplateUpdate,
)
from app.models.recipient import Recipient, RecipientCreate
from app.services.errors import (
    DeliveryValidationError,
    NotificationNotFound,
    RecipientNotFound,
    TemplateNotFound,
)
from app.services.templates import validate_template

logger = logging.getLogger(__name__)


class NotificationService:
    """Management side of notifications; delivery lives in DeliveryEngine."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def create_template(self, data: TemplateCreate) -> NotificationTemplate:
        """Create a template after checking its declared variables.

        Raises:
            TemplateValidationError: title/body use undeclared variables
            DeliveryValidationError: name already taken
        """
        validate_template(data.title, data.body, data.variables)
        existing = self.session.exec(
            select(NotificationTemplate).where(NotificationTemplate.name == data.name)
        ).first()
        if existing is not None:
            raise DeliveryValidationError(f"Template {data.name} already exists")

        template = NotificationTemplate(
            name=data.name,
            event=data.event,
            title=data.title,
            body=data.body,
            channels=[c.value for c in data.channels],
            variables=list(data.variables),
            data=dict(data.data),
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)

        logger.info("Template created", extra={"template": template.name})
        return template

    def update_template(self, name: str, data: TemplateUpdate) -> NotificationTemplate:
        """Apply changes and bump the template version."""
        template = self.get_template(name, active_only=False)
        changes = data.model_dump(exclude_unset=True)

        if "channels" in changes and data.channels is not None:
            changes["channels"] = [c.value for c in data.channels]
        validate_template(
            changes.get("title", template.title),
            changes.get("body") or template.body,
            changes.get("variables", template.variables) or [],
        )

        for key, value in changes.items():
            if value is not None or key in ("title", "event"):
                setattr(template, key, value)
        template.version += 1
        template.updated_at = datetime.utcnow()

        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)

        logger.info(
            "Template updated",
            extra={"template": template.name, "version": template.version},
        )
        return template

    def get_template(self, name: str, active_only: bool = True) -> NotificationTemplate:
        statement = select(NotificationTemplate).where(NotificationTemplate.name == name)
        if active_only:
            statement = statement.where(NotificationTemplate.is_active == True)  # noqa: E712
        template = self.session.exec(statement).first()
        if template is None:
            raise TemplateNotFound(f"Template {name} not found")
        return template

    def templates_for_event(self, event: str) -> list[NotificationTemplate]:
        """Active templates bound to an event."""
        return list(
            self.session.exec(
                select(NotificationTemplate)
                .where(NotificationTemplate.event == event)
                .where(NotificationTemplate.is_active == True)  # noqa: E712
                .order_by(NotificationTemplate.created_at)
            ).all()
        )

    def list_templates(self) -> list[NotificationTemplate]:
        return list(
            self.session.exec(
                select(NotificationTemplate).order_by(NotificationTemplate.name)
            ).all()
        )

    # -------------------------------------------------------------------------
    # Recipients
    # -------------------------------------------------------------------------

    def upsert_recipient(self, data: RecipientCreate) -> Recipient:
        """Create a recipient, or replace the contact details of an existing one."""
        recipient = self.session.get(Recipient, data.id) if data.id else None
        if recipient is None:
            recipient = Recipient(**data.model_dump(exclude_none=True))
        else:
            recipient.email = data.email
            recipient.phone = data.phone
            recipient.push_tokens = list(data.push_tokens)
            recipient.web_push_subscriptions = list(data.web_push_subscriptions)
            recipient.updated_at = datetime.utcnow()

        self.session.add(recipient)
        self.session.commit()
        self.session.refresh(recipient)
        return recipient

    def get_recipient(self, user_id: UUID) -> Recipient:
        recipient = self.session.get(Recipient, user_id)
        if recipient is None:
            raise RecipientNotFound(f"Recipient {user_id} not found")
        return recipient

    def active_recipients(self, user_ids: list[UUID] | None = None) -> list[Recipient]:
        """Active recipients, optionally restricted to ``user_ids``."""
        statement = select(Recipient).where(Recipient.is_active == True)  # noqa: E712
        if user_ids is not None:
            statement = statement.where(Recipient.id.in_(user_ids))
        return list(self.session.exec(statement.order_by(Recipient.created_at)).all())

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def get_preferences(self, user_id: UUID) -> NotificationPreference:
        """Stored preferences, or the all-enabled default (not persisted)."""
        preferences = self.session.get(NotificationPreference, user_id)
        if preferences is None:
            preferences = NotificationPreference(user_id=user_id)
        return preferences

    def update_preferences(
        self, user_id: UUID, data: PreferencesUpdate
    ) -> NotificationPreference:
        self.get_recipient(user_id)
        preferences = self.session.get(NotificationPreference, user_id)
        if preferences is None:
            preferences = NotificationPreference(user_id=user_id)

        merged = dict(preferences.channels or {})
        merged.update({channel.value: enabled for channel, enabled in data.channels.items()})
        preferences.channels = merged
        preferences.quiet_hours_start = data.quiet_hours_start
        preferences.quiet_hours_end = data.quiet_hours_end
        preferences.quiet_hours_timezone = data.quiet_hours_timezone
        preferences.updated_at = datetime.utcnow()

        self.session.add(preferences)
        self.session.commit()
        self.session.refresh(preferences)

        logger.info("Preferences updated", extra={"user_id": str(user_id)})
        return preferences

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def history(
        self,
        user_id: UUID,
        status: NotificationStatus | None = None,
        unread_only: bool = False,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Notification], int]:
        """A user's notifications, newest first."""
        conditions = [Notification.user_id == user_id]
        if status is not None:
            conditions.append(Notification.status == status)
        if unread_only:
            conditions.append(Notification.read_at.is_(None))
        if since is not None:
            conditions.append(Notification.created_at >= since)
        if until is not None:
            conditions.append(Notification.created_at < until)

        total = self.session.exec(
            select(func.count()).select_from(Notification).where(*conditions)
        ).one()
        notifications = self.session.exec(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return list(notifications), total

    def mark_as_read(
        self, notification_id: UUID, user_id: UUID | None = None
    ) -> Notification:
        """Acknowledge a notification; repeated calls keep the first read time."""
        notification = self.session.get(Notification, notification_id)
        if notification is None or (user_id is not None and notification.user_id != user_id):
            raise NotificationNotFound(f"Notification {notification_id} not found")
        if notification.read_at is None:
            notification.read_at = datetime.utcnow()
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
        return notification

    def mark_all_as_read(self, user_id: UUID) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.read_at.is_(None))
            .values(read_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def delete_notifications(self, user_id: UUID, notification_ids: list[UUID]) -> int:
        """Delete a batch of the user's notifications; others are ignored."""
        if not notification_ids:
            return 0
        result = self.session.execute(
            delete(Notification)
            .where(Notification.user_id == user_id)
            .where(Notification.id.in_(notification_ids))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount
