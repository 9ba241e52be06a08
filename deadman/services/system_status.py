"""
System status ledger — platform downtime windows.

Public API
----------
pause_system_tracking(db, reason, status, now)   → SystemStatusRecord (open window)
resume_system_tracking(db, reason, now)          → SystemStatusRecord | None
get_system_downtime_since(db, since)             → timedelta
get_current_system_status(db)                    → SystemStatusRecord | None
is_system_in_maintenance(db)                     → bool

Windows
-------
A MAINTENANCE or OUTAGE row with downtime_end NULL is an open window. At
most one window is open at a time: pausing while a window is open returns
that window. Resuming closes the newest open window and appends an
OPERATIONAL row, which becomes the current status.

Only closed windows count as downtime; an open window is accounted for
once it is closed.

"Latest" is by id, not created_at, so rows written in the same
microsecond still order deterministically.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from deadman.core.clock import as_utc, utcnow
from deadman.models.system_status import (
    DOWNTIME_STATUSES,
    SystemStatusRecord,
    SystemStatusType,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_current_system_status(db: Session) -> Optional[SystemStatusRecord]:
    """Most recent ledger row, or None when the ledger is empty (operational)."""
    return db.query(SystemStatusRecord).order_by(SystemStatusRecord.id.desc()).first()


def is_system_in_maintenance(db: Session) -> bool:
    current = get_current_system_status(db)
    return current is not None and current.status == SystemStatusType.MAINTENANCE


def _open_window(db: Session) -> Optional[SystemStatusRecord]:
    return (
        db.query(SystemStatusRecord)
        .filter(
            SystemStatusRecord.status.in_(DOWNTIME_STATUSES),
            SystemStatusRecord.downtime_start.isnot(None),
            SystemStatusRecord.downtime_end.is_(None),
        )
        .order_by(SystemStatusRecord.id.desc())
        .first()
    )


def get_system_downtime_since(db: Session, since: datetime) -> timedelta:
    """Total length of closed downtime windows that started at or after `since`."""
    since = as_utc(since)
    windows = (
        db.query(SystemStatusRecord)
        .filter(
            SystemStatusRecord.status.in_(DOWNTIME_STATUSES),
            SystemStatusRecord.downtime_start >= since,
            SystemStatusRecord.downtime_end.isnot(None),
        )
        .all()
    )
    total = timedelta(0)
    for window in windows:
        length = as_utc(window.downtime_end) - as_utc(window.downtime_start)
        if length > timedelta(0):
            total += length
    return total


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def pause_system_tracking(
    db: Session,
    reason: str,
    status: SystemStatusType = SystemStatusType.MAINTENANCE,
    now: Optional[datetime] = None,
) -> SystemStatusRecord:
    """Open a downtime window. Returns the already-open window if there is one."""
    if status not in DOWNTIME_STATUSES:
        raise ValueError(f"{status.value} does not open a downtime window")

    existing = _open_window(db)
    if existing is not None:
        logger.info("system_downtime_already_open", window_id=existing.id)
        return existing

    now = now or utcnow()
    record = SystemStatusRecord(
        status=status,
        downtime_start=now,
        reason=reason,
        created_at=now,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("system_downtime_started", window_id=record.id, status=status.value, reason=reason)
    return record


def resume_system_tracking(
    db: Session,
    reason: str = "System resumed",
    now: Optional[datetime] = None,
) -> Optional[SystemStatusRecord]:
    """
    Close the newest open window and append an OPERATIONAL row.

    Returns the closed window, or None when nothing was open (the OPERATIONAL
    row is still written so the current status reads operational).
    """
    now = now or utcnow()
    window = _open_window(db)
    if window is not None:
        window.downtime_end = now

    db.add(SystemStatusRecord(
        status=SystemStatusType.OPERATIONAL,
        reason=reason,
        created_at=now,
    ))
    db.commit()

    if window is None:
        logger.info("system_resume_without_open_window")
        return None

    db.refresh(window)
    logger.info(
        "system_downtime_ended",
        window_id=window.id,
        downtime_seconds=(as_utc(window.downtime_end) - as_utc(window.downtime_start)).total_seconds(),
    )
    return window
