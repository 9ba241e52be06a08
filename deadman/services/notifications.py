"""
Notification dispatcher — reminders, handover alerts and check-in links.

Public API
----------
NotificationDispatcher.send_reminder(db, user_id, reminder_type, now)         → NotificationResult
NotificationDispatcher.send_handover_alert(db, user_id, successor_ids, ...)  → list[NotificationResult]
NotificationDispatcher.generate_check_in_link(db, user_id, ttl, now)         → str
NotificationDispatcher.validate_check_in_link(db, token, now)                → CheckInValidation
NotificationDispatcher.mark_check_in_token_used(db, token, ip, ua, now)      → bool
NotificationDispatcher.release_check_in_token(db, token, used_at)            → bool

Delivery
--------
Channels are keyed by NotificationMethod. The user's preferred methods are
tried in order and the first one with a configured channel is used; a user
whose methods have no channel gets a FAILED delivery. Every attempt, failed
or not, leaves one append-only NotificationDelivery row.

Sending never raises: channel errors, unknown users and database errors all
come back as a FAILED NotificationResult so a sweep can carry on.

Check-in tokens
---------------
The raw token (32 random bytes, hex) only ever appears in the link. The
database keeps its SHA-256, so a leaked table cannot be replayed.
"""
from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.models.checkin_token import CheckInToken
from deadman.models.notification_delivery import (
    DeliveryStatus,
    NotificationDelivery,
    NotificationMethod,
    NotificationType,
)
from deadman.models.successor import Successor
from deadman.models.user import User
from deadman.services.inactivity_settings import get_or_create_settings, get_notification_methods

logger = structlog.get_logger(__name__)


class CheckInError:
    INVALID = "Invalid check-in token"
    EXPIRED = "Check-in token has expired"
    USED    = "Check-in token has already been used"
    FAILED  = "Failed to validate check-in token"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class NotificationResult:
    id: Optional[int]           # NotificationDelivery.id, None if the row could not be written
    user_id: int
    method: NotificationMethod
    status: DeliveryStatus
    timestamp: datetime
    retry_count: int = 0
    error: Optional[str] = None


@dataclass
class CheckInValidation:
    is_valid: bool
    user_id: Optional[int] = None
    remaining_time: Optional[timedelta] = None
    error: Optional[str] = None


@dataclass
class Message:
    subject: str
    body: str


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class NotificationChannel:
    """Delivers a rendered message to one recipient. Raises on failure."""

    def send(self, recipient: str, message: Message) -> None:
        raise NotImplementedError


class LoggingEmailChannel(NotificationChannel):
    """Stand-in email provider: writes the message to the log."""

    def send(self, recipient: str, message: Message) -> None:
        logger.info(
            "email_sent",
            recipient=recipient,
            subject=message.subject,
            preview=message.body[:100],
        )


# ---------------------------------------------------------------------------
# Copy
# ---------------------------------------------------------------------------

_SIGN_OFF = "\n\nBest regards,\nThe Deadman Team"


def _reminder_message(reminder_type: NotificationType, check_in_link: str, base_url: str) -> Message:
    actions = (
        f"1. Log into your account: {base_url}/login\n"
        f"2. Use this secure check-in link: {check_in_link}"
    )
    if reminder_type == NotificationType.FIRST_REMINDER:
        return Message(
            subject="Activity Reminder - 75% Threshold Reached",
            body=(
                "Hello,\n\n"
                "This is a friendly reminder that your account has been inactive for a while.\n"
                "You've reached 75% of your configured inactivity threshold.\n\n"
                "To reset your activity timer, you can either:\n" + actions + "\n\n"
                "If you don't take any action, you'll receive additional reminders "
                "as you approach your handover threshold." + _SIGN_OFF
            ),
        )
    if reminder_type == NotificationType.SECOND_REMINDER:
        return Message(
            subject="Activity Reminder - 85% Threshold Reached",
            body=(
                "Hello,\n\n"
                "Your account has been inactive for an extended period.\n"
                "You've now reached 85% of your configured inactivity threshold.\n\n"
                "IMPORTANT: Please take action soon to prevent automatic handover "
                "of your digital assets.\n\n"
                "To reset your activity timer:\n" + actions + _SIGN_OFF
            ),
        )
    if reminder_type == NotificationType.FINAL_WARNING:
        return Message(
            subject="URGENT: Final Warning - 95% Threshold Reached",
            body=(
                "URGENT NOTICE\n\n"
                "Your account has reached 95% of your inactivity threshold.\n"
                "If you don't take action soon, the automatic handover process will begin.\n\n"
                "IMMEDIATE ACTION REQUIRED:\n" + actions + "\n\n"
                "If you're unable to access your account, please contact support immediately."
                + _SIGN_OFF
            ),
        )
    if reminder_type == NotificationType.GRACE_PERIOD:
        return Message(
            subject="URGENT: Handover Grace Period Started",
            body=(
                "URGENT NOTICE\n\n"
                "Your inactivity threshold has been reached and a handover of your "
                f"digital assets is scheduled to begin in {settings.GRACE_PERIOD_HOURS} hours.\n\n"
                "Checking in now cancels the handover:\n" + actions + _SIGN_OFF
            ),
        )
    if reminder_type == NotificationType.HANDOVER_INITIATED:
        return Message(
            subject="Handover Initiated",
            body=(
                "Hello,\n\n"
                "The grace period has ended and your designated successors have been "
                "notified. You can still stop the handover by checking in:\n" + actions + _SIGN_OFF
            ),
        )
    return Message(
        subject="Activity Reminder",
        body=(
            "Hello,\n\n"
            "This is a reminder about your account activity.\n\n"
            "To reset your activity timer:\n" + actions + _SIGN_OFF
        ),
    )


def _handover_alert_message(successor_name: str, base_url: str) -> Message:
    return Message(
        subject="Digital Asset Handover Initiated",
        body=(
            f"Dear {successor_name},\n\n"
            "A user has designated you as a successor for their digital assets.\n"
            "The handover process has been initiated due to prolonged inactivity.\n\n"
            "Next steps:\n"
            f"1. Visit: {base_url}\n"
            "2. Follow the successor verification process" + _SIGN_OFF
        ),
    )


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class NotificationDispatcher:

    def __init__(
        self,
        channels: Optional[dict[NotificationMethod, NotificationChannel]] = None,
        base_url: Optional[str] = None,
    ):
        if channels is None:
            channels = {NotificationMethod.EMAIL: LoggingEmailChannel()}
        self.channels = channels
        self.base_url = (base_url or settings.BASE_URL).rstrip("/")

    # -- delivery bookkeeping ------------------------------------------------

    def _record_delivery(
        self,
        db: Session,
        user_id: int,
        notification_type: NotificationType,
        method: NotificationMethod,
        recipient: str,
        status: DeliveryStatus,
        error: Optional[str],
        now: datetime,
        handover_process_id: Optional[int] = None,
    ) -> Optional[int]:
        try:
            delivery = NotificationDelivery(
                user_id=user_id,
                handover_process_id=handover_process_id,
                notification_type=notification_type,
                method=method,
                recipient=recipient,
                status=status,
                error_message=error,
                retry_count=0,
                delivered_at=now if status == DeliveryStatus.DELIVERED else None,
                created_at=now,
            )
            db.add(delivery)
            db.commit()
            return delivery.id
        except Exception:
            db.rollback()
            logger.exception(
                "notification_delivery_record_failed",
                user_id=user_id,
                notification_type=notification_type.value,
            )
            return None

    def _pick_method(self, preferred: list[NotificationMethod]) -> NotificationMethod:
        for method in preferred:
            if method in self.channels:
                return method
        return preferred[0] if preferred else NotificationMethod.EMAIL

    def _deliver(self, method: NotificationMethod, recipient: str, message: Message) -> None:
        channel = self.channels.get(method)
        if channel is None:
            raise LookupError(f"No channel configured for {method.value}")
        channel.send(recipient, message)

    # -- reminders -------------------------------------------------------------

    def send_reminder(
        self,
        db: Session,
        user_id: int,
        reminder_type: NotificationType,
        now: Optional[datetime] = None,
    ) -> NotificationResult:
        now = now or utcnow()
        method = NotificationMethod.EMAIL
        recipient = "unknown"
        try:
            user = db.get(User, user_id)
            if user is None:
                raise LookupError("User not found")
            recipient = user.email

            user_settings = get_or_create_settings(db, user_id)
            method = self._pick_method(get_notification_methods(user_settings))

            link = self.generate_check_in_link(
                db, user_id, timedelta(hours=settings.CHECK_IN_TOKEN_TTL_HOURS), now=now
            )
            self._deliver(method, recipient, _reminder_message(reminder_type, link, self.base_url))
        except Exception as exc:
            db.rollback()
            logger.warning(
                "reminder_send_failed",
                user_id=user_id,
                reminder_type=reminder_type.value,
                error=str(exc),
            )
            delivery_id = self._record_delivery(
                db, user_id, reminder_type, method, recipient,
                DeliveryStatus.FAILED, str(exc), now,
            )
            return NotificationResult(
                id=delivery_id,
                user_id=user_id,
                method=method,
                status=DeliveryStatus.FAILED,
                timestamp=now,
                error=str(exc),
            )

        delivery_id = self._record_delivery(
            db, user_id, reminder_type, method, recipient, DeliveryStatus.SENT, None, now,
        )
        logger.info("reminder_sent", user_id=user_id, reminder_type=reminder_type.value, method=method.value)
        return NotificationResult(
            id=delivery_id,
            user_id=user_id,
            method=method,
            status=DeliveryStatus.SENT,
            timestamp=now,
        )

    # -- successors ------------------------------------------------------------

    def send_handover_alert(
        self,
        db: Session,
        user_id: int,
        successor_ids: list[int],
        handover_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[NotificationResult]:
        """One independent attempt per successor; a failure never stops the rest."""
        now = now or utcnow()
        results: list[NotificationResult] = []

        for successor_id in successor_ids:
            recipient = "unknown"
            try:
                successor = (
                    db.query(Successor)
                    .filter(Successor.id == successor_id, Successor.user_id == user_id)
                    .first()
                )
                if successor is None:
                    raise LookupError(f"Successor {successor_id} not found")
                recipient = successor.email
                self._deliver(
                    NotificationMethod.EMAIL,
                    recipient,
                    _handover_alert_message(successor.name or successor.email, self.base_url),
                )
                status, error = DeliveryStatus.SENT, None
            except Exception as exc:
                db.rollback()
                logger.warning(
                    "handover_alert_failed",
                    user_id=user_id,
                    successor_id=successor_id,
                    error=str(exc),
                )
                status, error = DeliveryStatus.FAILED, str(exc)

            delivery_id = self._record_delivery(
                db, user_id, NotificationType.SUCCESSOR_NOTIFICATION, NotificationMethod.EMAIL,
                recipient, status, error, now, handover_process_id=handover_id,
            )
            results.append(NotificationResult(
                id=delivery_id,
                user_id=user_id,
                method=NotificationMethod.EMAIL,
                status=status,
                timestamp=now,
                error=error,
            ))

        return results

    # -- check-in links --------------------------------------------------------

    def generate_check_in_link(
        self,
        db: Session,
        user_id: int,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> str:
        now = now or utcnow()
        ttl = ttl or timedelta(hours=settings.CHECK_IN_TOKEN_TTL_HOURS)
        token = secrets.token_hex(32)
        db.add(CheckInToken(
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=now + ttl,
            created_at=now,
        ))
        db.commit()
        return f"{self.base_url}/checkin?token={token}"

    def validate_check_in_link(
        self,
        db: Session,
        token: str,
        now: Optional[datetime] = None,
    ) -> CheckInValidation:
        now = now or utcnow()
        try:
            row = (
                db.query(CheckInToken)
                .filter(CheckInToken.token_hash == hash_token(token))
                .first()
            )
        except Exception:
            db.rollback()
            logger.exception("checkin_token_validation_failed")
            return CheckInValidation(is_valid=False, error=CheckInError.FAILED)

        if row is None:
            return CheckInValidation(is_valid=False, error=CheckInError.INVALID)

        expires_at = as_utc(row.expires_at)
        if now > expires_at:
            return CheckInValidation(is_valid=False, error=CheckInError.EXPIRED)
        if row.used_at is not None:
            return CheckInValidation(is_valid=False, error=CheckInError.USED)

        return CheckInValidation(
            is_valid=True,
            user_id=row.user_id,
            remaining_time=expires_at - now,
        )

    def mark_check_in_token_used(
        self,
        db: Session,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Consume the token. Returns False if it was already used or has expired,
        so two concurrent check-ins with one link cannot both succeed.
        """
        now = now or utcnow()
        updated = (
            db.query(CheckInToken)
            .filter(
                CheckInToken.token_hash == hash_token(token),
                CheckInToken.used_at.is_(None),
                CheckInToken.expires_at >= now,
            )
            .update(
                {
                    CheckInToken.used_at: now,
                    CheckInToken.ip_address: ip_address,
                    CheckInToken.user_agent: user_agent,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated == 1

    def release_check_in_token(self, db: Session, token: str, used_at: datetime) -> bool:
        """
        Undo `mark_check_in_token_used` after the check-in it guarded failed.
        Only the claim stamped with `used_at` is released.
        """
        released = (
            db.query(CheckInToken)
            .filter(
                CheckInToken.token_hash == hash_token(token),
                CheckInToken.used_at == used_at,
            )
            .update(
                {
                    CheckInToken.used_at: None,
                    CheckInToken.ip_address: None,
                    CheckInToken.user_agent: None,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if released:
            logger.warning("checkin_token_released")
        return released == 1
