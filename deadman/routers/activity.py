"""
Activity router.

POST /activity/check-in          — manual check-in (resets the clock, cancels any handover)
POST /activity/check-in/token    — check-in through an emailed single-use link
GET  /activity/status            — derived inactivity status
GET  /activity/history           — paginated activity log, newest first
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from deadman.core.clock import isoformat, utcnow
from deadman.core.errors import CheckInTokenInvalidError, InvalidActivityFilterError
from deadman.db.base import get_db
from deadman.models.activity_record import ActivityRecord, ActivityType
from deadman.routers.deps import client_ip, detect_client_type, get_current_user_id
from deadman.schemas.activity import (
    ActivityHistoryResponse,
    ActivityRecordOut,
    ActivityStatusOut,
    CheckInRequest,
    CheckInResponse,
    TokenCheckInRequest,
)
from deadman.schemas.common import ErrorResponse, PaginationOut
from deadman.services.activity import (
    ActivityStatus,
    HISTORY_MAX_LIMIT,
    get_activity_history,
    get_user_activity_status,
    record_activity,
)
from deadman.services.handover import cancel_handover
from deadman.services.notifications import CheckInError, NotificationDispatcher

router = APIRouter(prefix="/activity", tags=["activity"])


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _parse_metadata(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        return None


def status_to_response(status: Optional[ActivityStatus]) -> Optional[ActivityStatusOut]:
    if status is None:
        return None
    return ActivityStatusOut(
        last_activity=isoformat(status.last_activity),
        inactivity_duration_seconds=status.inactivity_duration.total_seconds(),
        threshold_percentage=round(status.threshold_percentage, 4),
        next_reminder_due=isoformat(status.next_reminder_due),
        handover_status=status.handover_status,
        time_remaining_seconds=status.time_remaining.total_seconds(),
        downtime_excluded_seconds=status.downtime_excluded.total_seconds(),
        threshold_days=status.threshold_days,
    )


def _record_to_response(record: ActivityRecord) -> ActivityRecordOut:
    return ActivityRecordOut(
        id=record.id,
        activity_type=record.activity_type.value,
        client_type=record.client_type.value,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        metadata=_parse_metadata(record.activity_metadata),
        created_at=isoformat(record.created_at),
    )


def _check_in(
    db: Session,
    request: Request,
    user_id: int,
    metadata: dict[str, Any],
    cancel_reason: str,
) -> CheckInResponse:
    """Record the check-in, then cancel any running handover."""
    client_type = detect_client_type(request)
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent")

    record_activity(
        db, user_id, ActivityType.MANUAL_CHECKIN,
        metadata=metadata,
        client_type=client_type,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    cancelled = cancel_handover(db, user_id, cancel_reason)
    if cancelled:
        record_activity(
            db, user_id, ActivityType.HANDOVER_CANCELLED,
            metadata={"reason": cancel_reason},
            client_type=client_type,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    return CheckInResponse(
        message="Check-in recorded. Your inactivity timer has been reset.",
        handover_cancelled=cancelled,
        status=status_to_response(get_user_activity_status(db, user_id)),
    )


# ---------------------------------------------------------------------------
# POST /activity/check-in
# ---------------------------------------------------------------------------

@router.post(
    "/check-in",
    response_model=CheckInResponse,
    summary="Manual check-in",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def manual_check_in(
    request: Request,
    payload: Optional[CheckInRequest] = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Reset the inactivity clock. If a handover is in progress (grace period or
    later), it is cancelled.
    """
    metadata: dict[str, Any] = {"via": "manual"}
    if payload is not None and payload.note:
        metadata["note"] = payload.note
    return _check_in(db, request, user_id, metadata, "User check-in")


# ---------------------------------------------------------------------------
# POST /activity/check-in/token
# ---------------------------------------------------------------------------

@router.post(
    "/check-in/token",
    response_model=CheckInResponse,
    summary="Check in with an emailed link",
    responses={410: {"model": ErrorResponse, "description": "Token invalid, expired or used."}},
)
def token_check_in(
    payload: TokenCheckInRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    No session required: the token is the capability. Each token works once
    and only until it expires. If the check-in itself fails the token is
    released again, so the emailed link can be retried.
    """
    dispatcher = NotificationDispatcher()
    validation = dispatcher.validate_check_in_link(db, payload.token)
    if not validation.is_valid:
        raise CheckInTokenInvalidError(validation.error)

    claimed_at = utcnow()
    consumed = dispatcher.mark_check_in_token_used(
        db, payload.token,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        now=claimed_at,
    )
    if not consumed:
        # Lost a race with another use of the same link.
        raise CheckInTokenInvalidError(CheckInError.USED)

    try:
        return _check_in(
            db, request, validation.user_id, {"via": "check_in_link"}, "User check-in via link"
        )
    except Exception:
        db.rollback()
        dispatcher.release_check_in_token(db, payload.token, claimed_at)
        raise


# ---------------------------------------------------------------------------
# GET /activity/status
# ---------------------------------------------------------------------------

@router.get(
    "/status",
    response_model=Optional[ActivityStatusOut],
    summary="Current inactivity status",
)
def activity_status(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Returns null (not an error) when the status cannot be computed, so a
    dashboard can keep rendering.
    """
    return status_to_response(get_user_activity_status(db, user_id))


# ---------------------------------------------------------------------------
# GET /activity/history
# ---------------------------------------------------------------------------

@router.get(
    "/history",
    response_model=ActivityHistoryResponse,
    summary="Activity log (newest first)",
)
def activity_history(
    limit: int = Query(default=50, ge=1, le=HISTORY_MAX_LIMIT, description="Page size."),
    offset: int = Query(default=0, ge=0, description="Skip N items."),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    activity_types: Optional[str] = Query(
        default=None,
        alias="activityTypes",
        description='Comma-separated, e.g. "login,manual_checkin".',
    ),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    types: Optional[list[ActivityType]] = None
    if activity_types:
        requested = [t.strip() for t in activity_types.split(",") if t.strip()]
        invalid = [t for t in requested if t not in ActivityType._value2member_map_]
        if invalid:
            raise InvalidActivityFilterError(invalid)
        types = [ActivityType(t) for t in requested]

    total, items = get_activity_history(
        db, user_id,
        limit=limit,
        offset=offset,
        start_date=start_date,
        end_date=end_date,
        activity_types=types,
    )
    has_more = offset + len(items) < total
    return ActivityHistoryResponse(
        activities=[_record_to_response(r) for r in items],
        total=total,
        has_more=has_more,
        pagination=PaginationOut(limit=limit, offset=offset, total=total, has_more=has_more),
    )
