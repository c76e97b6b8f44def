"""Tests for delivery target resolution.

Tests cover:
- Quiet-hours windows, including overnight wrap and timezones
- Channel intersection and the quiet-hours in-app fallback
- Contact addresses per channel
- Webhook registration matching
"""

from datetime import datetime
from uuid import uuid4

import pytest
from sqlmodel import Session

from app.models.notification import (
    NotificationChannel,
    NotificationPreference,
    NotificationTemplate,
)
from app.models.recipient import Recipient
from app.models.webhook import WebhookRegistration
from app.services.resolver import (
    TargetResolver,
    channel_addresses,
    in_window,
    is_quiet_hours,
    parse_time_of_day,
    resolve_channels,
)

PUSH = NotificationChannel.PUSH
EMAIL = NotificationChannel.EMAIL
IN_APP = NotificationChannel.IN_APP


def _prefs(start=None, end=None, tz=None, channels=None) -> NotificationPreference:
    return NotificationPreference(
        user_id=uuid4(),
        channels=channels or {},
        quiet_hours_start=start,
        quiet_hours_end=end,
        quiet_hours_timezone=tz,
    )


# ============================================================================
# Quiet Hours Tests
# ============================================================================

class TestQuietHours:
    """Tests for quiet-hours windows."""

    @pytest.mark.parametrize(
        "current,expected",
        [("21:59", False), ("22:00", True), ("23:30", True), ("00:00", True),
         ("05:59", True), ("06:00", False), ("12:00", False)],
    )
    def test_overnight_window_wraps(self, current, expected):
        """22:00-06:00 covers the night and stops at 06:00."""
        assert in_window(
            parse_time_of_day(current),
            parse_time_of_day("22:00"),
            parse_time_of_day("06:00"),
        ) is expected

    def test_same_day_window(self):
        """A daytime window is half-open."""
        start, end = parse_time_of_day("09:00"), parse_time_of_day("17:00")

        assert in_window(parse_time_of_day("09:00"), start, end) is True
        assert in_window(parse_time_of_day("17:00"), start, end) is False

    def test_equal_bounds_is_empty(self):
        """start == end never matches."""
        t = parse_time_of_day("08:00")
        assert in_window(t, t, t) is False

    def test_no_preferences(self):
        """No preferences means no quiet hours."""
        assert is_quiet_hours(None) is False
        assert is_quiet_hours(_prefs()) is False

    def test_timezone_aware(self):
        """Local time in the user's timezone decides."""
        prefs = _prefs("22:00", "07:00", "Asia/Tokyo")

        # 14:00 UTC is 23:00 in Tokyo
        assert is_quiet_hours(prefs, datetime(2026, 3, 1, 14, 0)) is True
        # 02:00 UTC is 11:00 in Tokyo
        assert is_quiet_hours(prefs, datetime(2026, 3, 1, 2, 0)) is False

    def test_unknown_timezone_falls_back_to_utc(self):
        """A bad stored timezone is treated as UTC."""
        prefs = _prefs("22:00", "07:00", "Mars/Olympus_Mons")
        assert is_quiet_hours(prefs, datetime(2026, 3, 1, 23, 0)) is True


# ============================================================================
# Channel Resolution Tests
# ============================================================================

class TestResolveChannels:
    """Tests for resolve_channels."""

    def test_intersection(self):
        """Template, requested and enabled channels intersect."""
        prefs = _prefs(channels={"sms": False})
        channels = resolve_channels(
            ["push", "sms", "email"], ["sms", "email"], prefs, datetime(2026, 1, 1, 12)
        )
        assert channels == {EMAIL}

    def test_no_request_means_all(self):
        """Without a request every template channel is eligible."""
        assert resolve_channels(["push", "email"], None, None) == {PUSH, EMAIL}

    def test_quiet_hours_yield_in_app_only(self):
        """Push and email enabled during quiet hours resolve to in-app only."""
        prefs = _prefs("22:00", "06:00", "UTC", channels={"push": True, "email": True})
        night = datetime(2026, 1, 1, 23, 30)

        assert resolve_channels(["push", "email"], None, prefs, night) == {IN_APP}
        assert resolve_channels(["push", "email", "in_app"], None, prefs, night) == {IN_APP}

    def test_quiet_hours_outside_window(self):
        """Outside the window the full set is kept."""
        prefs = _prefs("22:00", "06:00", "UTC")
        noon = datetime(2026, 1, 1, 12, 0)

        assert resolve_channels(["push", "email"], None, prefs, noon) == {PUSH, EMAIL}

    def test_nothing_eligible_stays_empty(self):
        """Quiet hours do not invent a delivery the user opted out of."""
        prefs = _prefs("22:00", "06:00", "UTC", channels={"push": False})
        night = datetime(2026, 1, 1, 23, 30)

        assert resolve_channels(["push"], None, prefs, night) == set()


# ============================================================================
# Address Tests
# ============================================================================

class TestChannelAddresses:
    """Tests for channel_addresses."""

    def test_addresses_per_channel(self):
        """Each channel reads its own contact detail."""
        recipient = Recipient(
            email="a@example.com",
            phone="+4712345678",
            push_tokens=["ExponentPushToken[1]", "ExponentPushToken[2]"],
            web_push_subscriptions=[{"endpoint": "https://push.example/1"}],
        )

        assert channel_addresses(recipient, PUSH) == recipient.push_tokens
        assert channel_addresses(recipient, EMAIL) == ["a@example.com"]
        assert channel_addresses(recipient, NotificationChannel.SMS) == ["+4712345678"]
        assert channel_addresses(recipient, NotificationChannel.WEB_PUSH) == [
            {"endpoint": "https://push.example/1"}
        ]
        assert channel_addresses(recipient, IN_APP) == [str(recipient.id)]

    def test_missing_contact(self):
        """No contact detail means no address."""
        recipient = Recipient()
        assert channel_addresses(recipient, EMAIL) == []
        assert channel_addresses(recipient, PUSH) == []


# ============================================================================
# TargetResolver Tests
# ============================================================================

class TestTargetResolver:
    """Tests for TargetResolver."""

    def test_webhook_registrations_match_event_and_activity(self, db_session: Session):
        """Only active registrations subscribed to the event match."""
        shipped = WebhookRegistration(
            endpoint="https://a.example/hook", events=["order.shipped"], secret="s"
        )
        both = WebhookRegistration(
            endpoint="https://b.example/hook",
            events=["order.created", "order.shipped"],
            secret="s",
        )
        inactive = WebhookRegistration(
            endpoint="https://c.example/hook",
            events=["order.shipped"],
            secret="s",
            is_active=False,
        )
        other = WebhookRegistration(
            endpoint="https://d.example/hook", events=["order.created"], secret="s"
        )
        db_session.add_all([shipped, both, inactive, other])
        db_session.commit()

        resolver = TargetResolver(db_session)
        matched = {r.endpoint for r in resolver.webhook_registrations("order.shipped")}

        assert matched == {"https://a.example/hook", "https://b.example/hook"}
        targets = resolver.webhook_targets("order.shipped", {"orderId": "O1"})
        assert {t.recipient for _, t in targets} == matched
        assert all(t.payload == {"orderId": "O1"} for _, t in targets)

    def test_notification_targets_skip_unreachable_channels(self, db_session: Session):
        """A channel without a contact address yields no target."""
        recipient = Recipient(push_tokens=["ExponentPushToken[1]"])
        template = NotificationTemplate(
            name="shipped", body="Shipped", channels=["push", "sms", "in_app"]
        )
        db_session.add_all([recipient, template])
        db_session.commit()

        targets = TargetResolver(db_session).notification_targets(
            template,
            recipient,
            "order.shipped",
            {"title": "", "body": "Shipped", "data": {}},
            now=datetime(2026, 1, 1, 12),
        )

        assert [(t.channel, t.recipient) for t in targets] == [
            ("in_app", str(recipient.id)),
            ("push", "ExponentPushToken[1]"),
        ]

    def test_notification_targets_use_stored_preferences(self, db_session: Session):
        """Stored preferences are looked up when not passed in."""
        recipient = Recipient(email="a@example.com", push_tokens=["ExponentPushToken[1]"])
        db_session.add(recipient)
        db_session.commit()
        db_session.add(NotificationPreference(user_id=recipient.id, channels={"push": False}))
        db_session.commit()
        template = NotificationTemplate(name="t", body="b", channels=["push", "email"])

        targets = TargetResolver(db_session).notification_targets(
            template, recipient, "e", {"body": "b"}, now=datetime(2026, 1, 1, 12)
        )

        assert [t.channel for t in targets] == ["email"]
