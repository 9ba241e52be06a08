"""
Activity recorder — signed activity log and derived inactivity status.

Public API
----------
record_activity(db, user_id, activity_type, ...)             → ActivityRecord  (commits)
record_activity_in_background(session_factory, user_id, ...) → None            (logs, never raises)
verify_activity_integrity(record)                            → bool
get_last_activity(db, user_id)                               → ActivityRecord | None
get_user_activity_status(db, user_id, now)                   → ActivityStatus | None
get_activity_history(db, user_id, ...)                       → (total, list[ActivityRecord])

Signature
---------
HMAC-SHA256 (ACTIVITY_HMAC_SECRET) over the canonical JSON

    {"activityType":..,"clientType":..,"metadata":{..},"timestamp":..,"userId":..}

keys sorted at every level, no whitespace. `timestamp` is created_at in UTC
ISO-8601 with microseconds. Metadata goes through a JSON round-trip before
signing, so the stored text and the signed object are the same value.

Status
------
The anchor is the newest record's created_at, or the user's created_at when
there is none. Closed platform downtime windows that started at or after
the anchor are subtracted, so a maintenance window never pushes anyone
toward handover.

    inactivity_duration  = max(0, now - anchor - downtime)
    threshold_percentage = min(100, inactivity_duration / threshold * 100)

Reads degrade: a failure is logged and None / (0, []) is returned so a
dashboard never breaks on the status widget.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.core.config import settings
from deadman.models.activity_record import ActivityRecord, ActivityType, ClientType
from deadman.models.handover_process import ACTIVE_STATUSES, HandoverProcess, HandoverProcessStatus
from deadman.models.user import User
from deadman.services.inactivity_settings import get_or_create_settings
from deadman.services.system_status import get_system_downtime_since

logger = structlog.get_logger(__name__)


class HandoverStatus:
    NORMAL          = "normal"
    REMINDER_PHASE  = "reminder_phase"
    GRACE_PERIOD    = "grace_period"
    HANDOVER_ACTIVE = "handover_active"


# Reminder bands, percent of threshold
REMINDER_BANDS = (75, 85, 95, 100)

HISTORY_MAX_LIMIT = 100


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class ActivityStatus:
    last_activity: datetime
    inactivity_duration: timedelta
    threshold_percentage: float         # 0..100
    next_reminder_due: Optional[datetime]
    handover_status: str                # HandoverStatus.*
    time_remaining: timedelta
    downtime_excluded: timedelta
    threshold_days: int


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def _normalize_metadata(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    return json.loads(json.dumps(metadata or {}, default=str))


def canonical_payload(
    user_id: int,
    activity_type: ActivityType,
    client_type: ClientType,
    timestamp: datetime,
    metadata: dict[str, Any],
) -> str:
    return json.dumps(
        {
            "activityType": ActivityType(activity_type).value,
            "clientType": ClientType(client_type).value,
            "metadata": metadata,
            "timestamp": as_utc(timestamp).isoformat(timespec="microseconds"),
            "userId": user_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def sign_payload(payload: str) -> str:
    return hmac.new(
        settings.ACTIVITY_HMAC_SECRET.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_activity_integrity(record: ActivityRecord) -> bool:
    try:
        metadata = json.loads(record.activity_metadata or "{}")
        expected = sign_payload(canonical_payload(
            record.user_id,
            record.activity_type,
            record.client_type,
            record.created_at,
            metadata,
        ))
        return hmac.compare_digest(expected, record.signature or "")
    except Exception:
        logger.warning("activity_integrity_check_failed", record_id=record.id, exc_info=True)
        return False


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def record_activity(
    db: Session,
    user_id: int,
    activity_type: ActivityType,
    metadata: Optional[dict[str, Any]] = None,
    client_type: ClientType = ClientType.WEB,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ActivityRecord:
    created_at = as_utc(now) if now else utcnow()
    normalized = _normalize_metadata(metadata)
    signature = sign_payload(canonical_payload(
        user_id, activity_type, client_type, created_at, normalized
    ))

    record = ActivityRecord(
        user_id=user_id,
        activity_type=activity_type,
        client_type=client_type,
        ip_address=ip_address,
        user_agent=user_agent,
        activity_metadata=json.dumps(normalized, sort_keys=True),
        signature=signature,
        created_at=created_at,
    )
    db.add(record)

    if activity_type == ActivityType.LOGIN:
        db.query(User).filter(User.id == user_id).update(
            {User.last_login_at: created_at}, synchronize_session=False
        )

    db.commit()
    db.refresh(record)
    return record


def record_activity_in_background(session_factory, user_id: int, activity_type: ActivityType, **kwargs) -> None:
    """
    Entry point for FastAPI BackgroundTasks: runs after the response is sent,
    in its own session. Failures are logged, never raised to the request.
    """
    db = session_factory()
    try:
        record_activity(db, user_id, activity_type, **kwargs)
    except Exception:
        db.rollback()
        logger.exception(
            "activity_record_failed",
            user_id=user_id,
            activity_type=ActivityType(activity_type).value,
        )
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_last_activity(db: Session, user_id: int) -> Optional[ActivityRecord]:
    return (
        db.query(ActivityRecord)
        .filter(ActivityRecord.user_id == user_id)
        .order_by(ActivityRecord.created_at.desc(), ActivityRecord.id.desc())
        .first()
    )


def _active_process(db: Session, user_id: int) -> Optional[HandoverProcess]:
    return (
        db.query(HandoverProcess)
        .filter(
            HandoverProcess.user_id == user_id,
            HandoverProcess.status.in_(ACTIVE_STATUSES),
        )
        .order_by(HandoverProcess.id.desc())
        .first()
    )


def _handover_status(percentage: float, process: Optional[HandoverProcess]) -> str:
    if process is not None:
        if process.status == HandoverProcessStatus.GRACE_PERIOD:
            return HandoverStatus.GRACE_PERIOD
        return HandoverStatus.HANDOVER_ACTIVE
    # Without a process, crossing 100% is reported as the reminder phase;
    # the scanner turns it into a real grace period by initiating a handover.
    if percentage >= 75:
        return HandoverStatus.REMINDER_PHASE
    return HandoverStatus.NORMAL


def _next_reminder_due(
    anchor: datetime,
    downtime: timedelta,
    threshold: timedelta,
    percentage: float,
) -> Optional[datetime]:
    for band in REMINDER_BANDS:
        if percentage < band:
            return anchor + downtime + threshold * (band / 100)
    return None


def get_user_activity_status(
    db: Session,
    user_id: int,
    now: Optional[datetime] = None,
) -> Optional[ActivityStatus]:
    now = as_utc(now) if now else utcnow()
    try:
        user = db.get(User, user_id)
        if user is None:
            logger.info("activity_status_unknown_user", user_id=user_id)
            return None

        last = get_last_activity(db, user_id)
        anchor = as_utc(last.created_at if last is not None else user.created_at)

        user_settings = get_or_create_settings(db, user_id)
        threshold = timedelta(days=user_settings.threshold_days)

        downtime = get_system_downtime_since(db, anchor)
        duration = max(timedelta(0), now - anchor - downtime)
        percentage = min(100.0, duration / threshold * 100)

        return ActivityStatus(
            last_activity=anchor,
            inactivity_duration=duration,
            threshold_percentage=percentage,
            next_reminder_due=_next_reminder_due(anchor, downtime, threshold, percentage),
            handover_status=_handover_status(percentage, _active_process(db, user_id)),
            time_remaining=max(timedelta(0), threshold - duration),
            downtime_excluded=downtime,
            threshold_days=user_settings.threshold_days,
        )
    except Exception:
        db.rollback()
        logger.exception("activity_status_failed", user_id=user_id)
        return None


def get_activity_history(
    db: Session,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    activity_types: Optional[list[ActivityType]] = None,
) -> tuple[int, list[ActivityRecord]]:
    """Newest first. Returns (total_matching, page)."""
    limit = max(1, min(limit, HISTORY_MAX_LIMIT))
    offset = max(0, offset)
    try:
        q = db.query(ActivityRecord).filter(ActivityRecord.user_id == user_id)
        if start_date is not None:
            q = q.filter(ActivityRecord.created_at >= as_utc(start_date))
        if end_date is not None:
            q = q.filter(ActivityRecord.created_at <= as_utc(end_date))
        if activity_types:
            q = q.filter(ActivityRecord.activity_type.in_(activity_types))

        total = q.count()
        items = (
            q.order_by(ActivityRecord.created_at.desc(), ActivityRecord.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return total, items
    except Exception:
        db.rollback()
        logger.exception("activity_history_failed", user_id=user_id)
        return 0, []
