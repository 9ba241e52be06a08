"""
Tests for the notification dispatcher and per-user inactivity settings.

Covered:
  - check-in links: format, only the hash is stored, invalid / expired / used
  - single use: a token can be consumed exactly once
  - reminders: delivered, channel failure, missing user, no channel for method
  - handover alerts: one attempt per successor, a failure does not stop the rest
  - settings: lazy defaults, threshold bounds, method validation, pause windows
"""
from __future__ import annotations

import json
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import T0, RecordingChannel, days
from deadman.core.errors import InvalidSettingsError, UserNotFoundError
from deadman.models.checkin_token import CheckInToken
from deadman.models.notification_delivery import (
    DeliveryStatus,
    NotificationDelivery,
    NotificationMethod,
    NotificationType,
)
from deadman.services.inactivity_settings import (
    get_notification_methods,
    get_or_create_settings,
    is_tracking_paused,
    pause_tracking,
    resume_tracking,
    update_notification_methods,
    update_threshold,
)
from deadman.services.notifications import CheckInError, NotificationDispatcher, hash_token


def _token(link: str) -> str:
    return parse_qs(urlparse(link).query)["token"][0]


# ---------------------------------------------------------------------------
# Check-in links
# ---------------------------------------------------------------------------

class TestCheckInLinks:
    def test_link_format(self, db, make_user, dispatcher):
        user = make_user()
        link = dispatcher.generate_check_in_link(db, user.id, now=T0)
        assert link.startswith("https://deadman.test/checkin?token=")
        token = _token(link)
        assert len(token) == 64
        int(token, 16)

    def test_only_hash_is_stored(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, now=T0))
        row = db.query(CheckInToken).one()
        assert row.token_hash == hash_token(token)
        assert row.token_hash != token

    def test_tokens_are_unique(self, db, make_user, dispatcher):
        user = make_user()
        links = {dispatcher.generate_check_in_link(db, user.id, now=T0) for _ in range(5)}
        assert len(links) == 5

    def test_valid_token(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, ttl=timedelta(hours=24), now=T0))
        result = dispatcher.validate_check_in_link(db, token, now=T0 + timedelta(hours=1))
        assert result.is_valid is True
        assert result.user_id == user.id
        assert result.remaining_time == timedelta(hours=23)

    def test_unknown_token(self, db, dispatcher):
        result = dispatcher.validate_check_in_link(db, "f" * 64, now=T0)
        assert result.is_valid is False
        assert result.error == CheckInError.INVALID

    def test_expired_token(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, ttl=timedelta(hours=1), now=T0))
        result = dispatcher.validate_check_in_link(db, token, now=T0 + timedelta(hours=2))
        assert result.is_valid is False
        assert result.error == CheckInError.EXPIRED

    def test_used_token(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, now=T0))
        assert dispatcher.mark_check_in_token_used(db, token, "10.0.0.1", "pytest", now=T0) is True

        result = dispatcher.validate_check_in_link(db, token, now=T0 + timedelta(minutes=1))
        assert result.is_valid is False
        assert result.error == CheckInError.USED

        row = db.query(CheckInToken).one()
        assert row.ip_address == "10.0.0.1"
        assert row.user_agent == "pytest"

    def test_token_consumed_once(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, now=T0))
        assert dispatcher.mark_check_in_token_used(db, token, now=T0) is True
        assert dispatcher.mark_check_in_token_used(db, token, now=T0) is False

    def test_expired_token_cannot_be_consumed(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, ttl=timedelta(hours=1), now=T0))
        assert dispatcher.mark_check_in_token_used(db, token, now=T0 + timedelta(hours=2)) is False

    def test_released_token_can_be_used_again(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, now=T0))
        claimed_at = T0 + timedelta(minutes=1)
        assert dispatcher.mark_check_in_token_used(db, token, "10.0.0.1", "pytest", now=claimed_at)

        assert dispatcher.release_check_in_token(db, token, claimed_at) is True
        assert dispatcher.validate_check_in_link(db, token, now=claimed_at).is_valid is True
        assert dispatcher.mark_check_in_token_used(db, token, now=claimed_at) is True

    def test_release_only_undoes_matching_claim(self, db, make_user, dispatcher):
        user = make_user()
        token = _token(dispatcher.generate_check_in_link(db, user.id, now=T0))
        dispatcher.mark_check_in_token_used(db, token, now=T0 + timedelta(minutes=1))

        assert dispatcher.release_check_in_token(db, token, T0 + timedelta(minutes=2)) is False
        result = dispatcher.validate_check_in_link(db, token, now=T0 + timedelta(minutes=3))
        assert result.error == CheckInError.USED


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

class TestReminders:
    def test_reminder_delivered(self, db, make_user, dispatcher, channel):
        user = make_user()
        result = dispatcher.send_reminder(db, user.id, NotificationType.FIRST_REMINDER, now=T0)

        assert result.status == DeliveryStatus.SENT
        assert result.method == NotificationMethod.EMAIL
        assert result.error is None
        recipient, message = channel.sent[0]
        assert recipient == user.email
        assert "75%" in message.subject
        assert "https://deadman.test/checkin?token=" in message.body

        delivery = db.get(NotificationDelivery, result.id)
        assert delivery.status == DeliveryStatus.SENT
        assert delivery.notification_type == NotificationType.FIRST_REMINDER
        assert delivery.recipient == user.email

    @pytest.mark.parametrize(
        "reminder_type, marker",
        [
            (NotificationType.SECOND_REMINDER, "85%"),
            (NotificationType.FINAL_WARNING, "Final Warning"),
            (NotificationType.GRACE_PERIOD, "Grace Period"),
            (NotificationType.HANDOVER_INITIATED, "Handover Initiated"),
        ],
    )
    def test_reminder_copy(self, db, make_user, dispatcher, channel, reminder_type, marker):
        user = make_user()
        dispatcher.send_reminder(db, user.id, reminder_type, now=T0)
        assert marker in channel.sent[0][1].subject

    def test_reminder_includes_fresh_token(self, db, make_user, dispatcher, channel):
        user = make_user()
        dispatcher.send_reminder(db, user.id, NotificationType.FIRST_REMINDER, now=T0)
        body = channel.sent[0][1].body
        token = body.split("checkin?token=")[1].split()[0]
        assert dispatcher.validate_check_in_link(db, token, now=T0 + timedelta(hours=1)).is_valid

    def test_channel_failure_recorded(self, db, make_user):
        user = make_user()
        failing = NotificationDispatcher(channels={NotificationMethod.EMAIL: RecordingChannel(fail=True)})
        result = failing.send_reminder(db, user.id, NotificationType.FIRST_REMINDER, now=T0)

        assert result.status == DeliveryStatus.FAILED
        assert "provider unavailable" in result.error
        assert db.get(NotificationDelivery, result.id).status == DeliveryStatus.FAILED

    def test_unknown_user_does_not_raise(self, db, dispatcher, channel):
        result = dispatcher.send_reminder(db, 9999, NotificationType.FIRST_REMINDER, now=T0)
        assert result.status == DeliveryStatus.FAILED
        assert result.error == "User not found"
        assert channel.sent == []

    def test_preferred_method_without_channel(self, db, make_user, dispatcher, channel):
        user = make_user()
        update_notification_methods(db, user.id, ["sms"])
        result = dispatcher.send_reminder(db, user.id, NotificationType.FIRST_REMINDER, now=T0)
        assert result.status == DeliveryStatus.FAILED
        assert result.method == NotificationMethod.SMS
        assert channel.sent == []

    def test_falls_through_to_configured_channel(self, db, make_user, dispatcher, channel):
        user = make_user()
        update_notification_methods(db, user.id, ["push", "email"])
        result = dispatcher.send_reminder(db, user.id, NotificationType.FIRST_REMINDER, now=T0)
        assert result.status == DeliveryStatus.SENT
        assert result.method == NotificationMethod.EMAIL


# ---------------------------------------------------------------------------
# Handover alerts
# ---------------------------------------------------------------------------

class TestHandoverAlerts:
    def test_one_attempt_per_successor(self, db, make_user, make_successor, dispatcher, channel):
        user = make_user()
        alice = make_successor(user, "alice@example.com", "Alice")
        bob = make_successor(user, "bob@example.com", "Bob")

        results = dispatcher.send_handover_alert(db, user.id, [alice.id, bob.id], now=T0)

        assert [r.status for r in results] == [DeliveryStatus.SENT, DeliveryStatus.SENT]
        assert [recipient for recipient, _ in channel.sent] == ["alice@example.com", "bob@example.com"]
        assert "Dear Alice" in channel.sent[0][1].body

    def test_missing_successor_does_not_stop_others(self, db, make_user, make_successor, dispatcher, channel):
        user = make_user()
        bob = make_successor(user, "bob@example.com")

        results = dispatcher.send_handover_alert(db, user.id, [4242, bob.id], now=T0)

        assert [r.status for r in results] == [DeliveryStatus.FAILED, DeliveryStatus.SENT]
        assert [recipient for recipient, _ in channel.sent] == ["bob@example.com"]
        rows = db.query(NotificationDelivery).order_by(NotificationDelivery.id).all()
        assert [r.recipient for r in rows] == ["unknown", "bob@example.com"]
        assert all(r.notification_type == NotificationType.SUCCESSOR_NOTIFICATION for r in rows)

    def test_other_users_successor_is_rejected(self, db, make_user, make_successor, dispatcher, channel):
        owner, stranger = make_user(), make_user()
        theirs = make_successor(stranger, "carol@example.com")
        results = dispatcher.send_handover_alert(db, owner.id, [theirs.id], now=T0)
        assert results[0].status == DeliveryStatus.FAILED
        assert channel.sent == []


# ---------------------------------------------------------------------------
# Inactivity settings
# ---------------------------------------------------------------------------

class TestInactivitySettings:
    def test_defaults_created_lazily(self, db, make_user):
        user = make_user()
        row = get_or_create_settings(db, user.id)
        assert row.threshold_days == 90
        assert row.is_paused is False
        assert get_notification_methods(row) == [NotificationMethod.EMAIL]
        assert get_or_create_settings(db, user.id) is row

    def test_unknown_user(self, db):
        with pytest.raises(UserNotFoundError):
            get_or_create_settings(db, 9999)

    @pytest.mark.parametrize("value", [30, 90, 365])
    def test_threshold_in_range(self, db, make_user, value):
        user = make_user()
        assert update_threshold(db, user.id, value).threshold_days == value

    @pytest.mark.parametrize("value", [0, 29, 366])
    def test_threshold_out_of_range(self, db, make_user, value):
        user = make_user()
        with pytest.raises(InvalidSettingsError) as exc:
            update_threshold(db, user.id, value)
        assert exc.value.details == {"field": "threshold_days"}

    def test_methods_deduplicated_in_order(self, db, make_user):
        user = make_user()
        row = update_notification_methods(db, user.id, ["push", "email", "push"])
        assert json.loads(row.notification_methods) == ["push", "email"]

    @pytest.mark.parametrize("methods", [[], ["pigeon"], ["email", "fax"]])
    def test_methods_rejected(self, db, make_user, methods):
        user = make_user()
        with pytest.raises(InvalidSettingsError):
            update_notification_methods(db, user.id, methods)

    def test_pause_indefinitely(self, db, make_user):
        user = make_user()
        row = pause_tracking(db, user.id, reason="travelling")
        assert is_tracking_paused(row, now=T0 + days(1000))
        assert row.pause_reason == "travelling"

    def test_pause_until(self, db, make_user):
        user = make_user()
        row = pause_tracking(db, user.id, until=T0 + days(10))
        assert is_tracking_paused(row, now=T0 + days(9))
        assert not is_tracking_paused(row, now=T0 + days(11))

    def test_resume(self, db, make_user):
        user = make_user()
        pause_tracking(db, user.id, reason="travelling", until=T0 + days(10))
        row = resume_tracking(db, user.id)
        assert row.is_paused is False
        assert row.pause_reason is None
        assert row.paused_until is None
        assert not is_tracking_paused(row, now=T0)
