"""Delivery target resolution.

Turns an event into the concrete set of destinations:
- webhook fan-out: every active registration subscribed to the event
- notification channels: template channels, narrowed by the caller's
  requested channels and the user's preferences, collapsed to in-app
  during the user's quiet hours
"""

import logging
from datetime import datetime, time, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session, select

from app.models.notification import (
    NotificationChannel,
    NotificationPreference,
    NotificationTemplate,
)
from app.models.recipient import Recipient
from app.models.webhook import WebhookRegistration
from app.transports.base import DeliveryTarget

logger = logging.getLogger(__name__)


def parse_time_of_day(value: str) -> time:
    """Parse ``HH:MM`` (24h)."""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_window(current: time, start: time, end: time) -> bool:
    """Whether ``current`` lies in ``[start, end)``.

    ``start > end`` wraps midnight; ``start == end`` is an empty window.
    """
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def is_quiet_hours(
    preferences: NotificationPreference | None,
    now: datetime | None = None,
) -> bool:
    """Check the user's quiet-hours window at ``now`` (naive UTC)."""
    if preferences is None:
        return False
    if not preferences.quiet_hours_start or not preferences.quiet_hours_end:
        return False

    now = now or datetime.utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    tz_name = preferences.quiet_hours_timezone or "UTC"
    try:
        local = now.astimezone(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        logger.warning(
            "Unknown quiet-hours timezone, using UTC",
            extra={"user_id": str(preferences.user_id), "timezone": tz_name},
        )
        local = now.astimezone(timezone.utc)

    return in_window(
        local.time().replace(second=0, microsecond=0),
        parse_time_of_day(preferences.quiet_hours_start),
        parse_time_of_day(preferences.quiet_hours_end),
    )


def resolve_channels(
    template_channels: Iterable[str],
    requested: Iterable[str] | None,
    preferences: NotificationPreference | None,
    now: datetime | None = None,
) -> set[NotificationChannel]:
    """Intersect template, requested and enabled channels.

    During quiet hours a non-empty result is replaced by in-app alone, even
    when the template or preferences left in-app out. An empty result
    stays empty.
    """
    channels = {NotificationChannel(c) for c in template_channels}
    if requested is not None:
        channels &= {NotificationChannel(c) for c in requested}
    if preferences is not None:
        channels &= preferences.enabled_channels()

    if channels and is_quiet_hours(preferences, now):
        return {NotificationChannel.IN_APP}
    return channels


def channel_addresses(recipient: Recipient, channel: NotificationChannel) -> list[Any]:
    """Addresses a recipient has on a channel; empty means unreachable."""
    if channel == NotificationChannel.PUSH:
        return [token for token in recipient.push_tokens or [] if token]
    if channel == NotificationChannel.SMS:
        return [recipient.phone] if recipient.phone else []
    if channel == NotificationChannel.EMAIL:
        return [recipient.email] if recipient.email else []
    if channel == NotificationChannel.WEB_PUSH:
        return [sub for sub in recipient.web_push_subscriptions or [] if sub]
    if channel == NotificationChannel.IN_APP:
        return [str(recipient.id)]
    return []


class TargetResolver:
    """Resolves events to webhook registrations and notification targets."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def webhook_registrations(self, event: str) -> list[WebhookRegistration]:
        """Active registrations subscribed to ``event``, oldest first."""
        registrations = self.session.exec(
            select(WebhookRegistration)
            .where(WebhookRegistration.is_active == True)  # noqa: E712
            .order_by(WebhookRegistration.created_at)
        ).all()
        # Event lists live in a JSON column; match in Python for portability
        return [r for r in registrations if event in (r.events or [])]

    def webhook_targets(
        self,
        event: str,
        payload: dict[str, Any],
    ) -> list[tuple[WebhookRegistration, DeliveryTarget]]:
        """One target per subscribed registration."""
        return [
            (
                registration,
                DeliveryTarget(
                    channel="webhook",
                    recipient=registration.endpoint,
                    event=event,
                    payload=payload,
                    options={
                        "registration_id": str(registration.id),
                        "headers": dict(registration.headers or {}),
                    },
                ),
            )
            for registration in self.webhook_registrations(event)
        ]

    def preferences_for(self, recipient: Recipient) -> NotificationPreference | None:
        return self.session.get(NotificationPreference, recipient.id)

    def notification_targets(
        self,
        template: NotificationTemplate,
        recipient: Recipient,
        event: str,
        content: dict[str, Any],
        requested: Iterable[str] | None = None,
        preferences: NotificationPreference | None = None,
        now: datetime | None = None,
    ) -> list[DeliveryTarget]:
        """Targets for one recipient of a rendered template.

        Args:
            template: Template whose channels bound the fan-out
            recipient: Contact directory entry
            event: Event name
            content: Rendered ``title``/``body``/``data`` plus notification id
            requested: Channels asked for by the caller (None means all)
            preferences: User preferences (looked up when omitted)
            now: Reference time for quiet hours
        """
        if preferences is None:
            preferences = self.preferences_for(recipient)

        channels = resolve_channels(template.channels, requested, preferences, now)

        targets: list[DeliveryTarget] = []
        for channel in sorted(channels, key=lambda c: c.value):
            addresses = channel_addresses(recipient, channel)
            if not addresses:
                logger.debug(
                    "Recipient has no address on channel",
                    extra={"user_id": str(recipient.id), "channel": channel.value},
                )
                continue
            for address in addresses:
                targets.append(
                    DeliveryTarget(
                        channel=channel.value,
                        recipient=address,
                        event=event,
                        payload=dict(content),
                    )
                )
        return targets
