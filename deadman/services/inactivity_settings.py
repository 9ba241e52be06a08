"""
Per-user inactivity settings.

Rows are created lazily with defaults the first time anything reads them,
so every user has settings without a signup hook.

notification_methods is stored as a JSON list of NotificationMethod values.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.core.errors import InvalidSettingsError, UserNotFoundError
from deadman.models.inactivity_settings import InactivitySettings
from deadman.models.notification_delivery import NotificationMethod
from deadman.models.user import User

MIN_THRESHOLD_DAYS = 30
MAX_THRESHOLD_DAYS = 365


def get_or_create_settings(db: Session, user_id: int) -> InactivitySettings:
    row = db.get(InactivitySettings, user_id)
    if row is not None:
        return row

    if db.get(User, user_id) is None:
        raise UserNotFoundError(user_id)

    row = InactivitySettings(
        user_id=user_id,
        threshold_days=settings.DEFAULT_THRESHOLD_DAYS,
        notification_methods=json.dumps([NotificationMethod.EMAIL.value]),
        is_paused=False,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the row first.
        db.rollback()
        return db.get(InactivitySettings, user_id)
    db.refresh(row)
    return row


def get_notification_methods(row: InactivitySettings) -> list[NotificationMethod]:
    try:
        values = json.loads(row.notification_methods or "[]")
    except ValueError:
        values = []
    methods = [NotificationMethod(v) for v in values if v in NotificationMethod._value2member_map_]
    return methods or [NotificationMethod.EMAIL]


def is_tracking_paused(row: InactivitySettings, now: Optional[datetime] = None) -> bool:
    """Paused indefinitely, or paused with `paused_until` still in the future."""
    if not row.is_paused:
        return False
    if row.paused_until is None:
        return True
    return as_utc(row.paused_until) > (now or utcnow())


def update_threshold(db: Session, user_id: int, threshold_days: int) -> InactivitySettings:
    if not MIN_THRESHOLD_DAYS <= threshold_days <= MAX_THRESHOLD_DAYS:
        raise InvalidSettingsError(
            "threshold_days",
            f"Threshold must be between {MIN_THRESHOLD_DAYS} and {MAX_THRESHOLD_DAYS} days.",
        )
    row = get_or_create_settings(db, user_id)
    row.threshold_days = threshold_days
    db.commit()
    db.refresh(row)
    return row


def update_notification_methods(
    db: Session, user_id: int, methods: list[str]
) -> InactivitySettings:
    if not methods:
        raise InvalidSettingsError("notification_methods", "At least one notification method is required.")
    invalid = [m for m in methods if m not in NotificationMethod._value2member_map_]
    if invalid:
        raise InvalidSettingsError(
            "notification_methods",
            f"Unsupported notification methods: {', '.join(invalid)}.",
        )
    # de-duplicate, keep the caller's preference order
    ordered = list(dict.fromkeys(methods))

    row = get_or_create_settings(db, user_id)
    row.notification_methods = json.dumps(ordered)
    db.commit()
    db.refresh(row)
    return row


def pause_tracking(
    db: Session,
    user_id: int,
    reason: Optional[str] = None,
    until: Optional[datetime] = None,
) -> InactivitySettings:
    row = get_or_create_settings(db, user_id)
    row.is_paused = True
    row.pause_reason = reason
    row.paused_until = as_utc(until)
    db.commit()
    db.refresh(row)
    return row


def resume_tracking(db: Session, user_id: int) -> InactivitySettings:
    row = get_or_create_settings(db, user_id)
    row.is_paused = False
    row.pause_reason = None
    row.paused_until = None
    db.commit()
    db.refresh(row)
    return row
