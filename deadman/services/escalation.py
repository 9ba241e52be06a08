"""
Escalation policy — what to do about one user's inactivity right now.

Bands (inclusive lower bound, percent of threshold)
---------------------------------------------------
  [100, ∞)  INITIATE_HANDOVER   unless a grace period / handover is already running
                                or one completed after the last activity
  [95, 100) FINAL_WARNING       cooldown 6h
  [85, 95)  SECOND_REMINDER     cooldown 12h
  [75, 85)  FIRST_REMINDER      cooldown 24h
  [0, 75)   NONE

Cooldowns
---------
Measured from the newest SENT or DELIVERED delivery of the same type for the
user. FAILED attempts do not start a cooldown, so a failed reminder is tried
again on the next sweep (never twice in one sweep: each sweep evaluates a
user once).

`select_action` is pure; `evaluate_and_escalate` applies it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.models.handover_process import HandoverProcessStatus
from deadman.models.notification_delivery import DeliveryStatus, NotificationDelivery, NotificationType
from deadman.services.activity import ActivityStatus, HandoverStatus
from deadman.services.handover import initiate_handover, latest_process
from deadman.services.notifications import NotificationDispatcher, NotificationResult

logger = structlog.get_logger(__name__)


class EscalationAction:
    NONE              = "none"
    FIRST_REMINDER    = "first_reminder"
    SECOND_REMINDER   = "second_reminder"
    FINAL_WARNING     = "final_warning"
    INITIATE_HANDOVER = "initiate_handover"


REMINDER_COOLDOWNS: dict[NotificationType, timedelta] = {
    NotificationType.FIRST_REMINDER: timedelta(hours=24),
    NotificationType.SECOND_REMINDER: timedelta(hours=12),
    NotificationType.FINAL_WARNING: timedelta(hours=6),
}

_SUCCESSFUL = (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class EscalationDecision:
    action: str                                  # EscalationAction.*
    reminder_type: Optional[NotificationType] = None


@dataclass
class EscalationResult:
    user_id: int
    action: str
    skipped: bool = False                        # reminder still in cooldown
    notification: Optional[NotificationResult] = None
    handover_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def select_action(status: ActivityStatus) -> EscalationDecision:
    pct = status.threshold_percentage
    if pct >= 100:
        if status.handover_status in (HandoverStatus.GRACE_PERIOD, HandoverStatus.HANDOVER_ACTIVE):
            return EscalationDecision(EscalationAction.NONE)
        return EscalationDecision(EscalationAction.INITIATE_HANDOVER)
    if pct >= 95:
        return EscalationDecision(EscalationAction.FINAL_WARNING, NotificationType.FINAL_WARNING)
    if pct >= 85:
        return EscalationDecision(EscalationAction.SECOND_REMINDER, NotificationType.SECOND_REMINDER)
    if pct >= 75:
        return EscalationDecision(EscalationAction.FIRST_REMINDER, NotificationType.FIRST_REMINDER)
    return EscalationDecision(EscalationAction.NONE)


def last_successful_delivery(
    db: Session, user_id: int, notification_type: NotificationType
) -> Optional[datetime]:
    row = (
        db.query(NotificationDelivery.created_at)
        .filter(
            NotificationDelivery.user_id == user_id,
            NotificationDelivery.notification_type == notification_type,
            NotificationDelivery.status.in_(_SUCCESSFUL),
        )
        .order_by(NotificationDelivery.created_at.desc())
        .first()
    )
    return as_utc(row[0]) if row else None


def in_cooldown(
    db: Session,
    user_id: int,
    notification_type: NotificationType,
    cooldown: timedelta,
    now: datetime,
) -> bool:
    last = last_successful_delivery(db, user_id, notification_type)
    return last is not None and now - last < cooldown


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def _handed_over_since_last_activity(db: Session, user_id: int, status: ActivityStatus) -> bool:
    """A completed handover stands until the user is active again."""
    latest = latest_process(db, user_id)
    if latest is None or latest.status != HandoverProcessStatus.COMPLETED:
        return False
    return as_utc(latest.completed_at) >= status.last_activity


def evaluate_and_escalate(
    db: Session,
    user_id: int,
    status: ActivityStatus,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> EscalationResult:
    now = as_utc(now) if now else utcnow()
    decision = select_action(status)
    result = EscalationResult(user_id=user_id, action=decision.action)

    if decision.action == EscalationAction.NONE:
        return result

    if decision.action == EscalationAction.INITIATE_HANDOVER:
        if _handed_over_since_last_activity(db, user_id, status):
            logger.info("handover_already_completed", user_id=user_id)
            result.action = EscalationAction.NONE
            return result
        process = initiate_handover(db, user_id, now=now)
        result.handover_id = process.id
        # One grace-period notice per grace period.
        grace = timedelta(hours=settings.GRACE_PERIOD_HOURS)
        if not in_cooldown(db, user_id, NotificationType.GRACE_PERIOD, grace, now):
            result.notification = dispatcher.send_reminder(
                db, user_id, NotificationType.GRACE_PERIOD, now=now
            )
        return result

    reminder_type = decision.reminder_type
    if in_cooldown(db, user_id, reminder_type, REMINDER_COOLDOWNS[reminder_type], now):
        result.skipped = True
        return result

    notification = dispatcher.send_reminder(db, user_id, reminder_type, now=now)
    result.notification = notification
    if notification.status == DeliveryStatus.FAILED:
        logger.warning(
            "reminder_failed",
            user_id=user_id,
            reminder_type=reminder_type.value,
            error=notification.error,
        )
    else:
        logger.info(
            "reminder_dispatched",
            user_id=user_id,
            reminder_type=reminder_type.value,
            threshold_percentage=round(status.threshold_percentage, 2),
        )
    return result
