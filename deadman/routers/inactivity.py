"""
Inactivity settings router.

GET  /inactivity/settings        — current settings (created with defaults on first read)
PUT  /inactivity/threshold       — 30–365 days
PUT  /inactivity/notifications   — preferred reminder channels
POST /inactivity/pause           — stop the clock for this user
POST /inactivity/resume
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from deadman.core.clock import isoformat
from deadman.db.base import get_db
from deadman.models.activity_record import ActivityType
from deadman.models.inactivity_settings import InactivitySettings
from deadman.routers.deps import (
    client_ip,
    detect_client_type,
    get_current_user_id,
    get_session_factory,
    track,
)
from deadman.schemas.common import ErrorResponse
from deadman.schemas.inactivity import (
    InactivitySettingsOut,
    NotificationMethodsUpdateRequest,
    PauseRequest,
    ThresholdUpdateRequest,
)
from deadman.services import inactivity_settings as settings_service
from deadman.services.activity import record_activity_in_background

router = APIRouter(prefix="/inactivity", tags=["inactivity"])


def _settings_to_response(row: InactivitySettings) -> InactivitySettingsOut:
    return InactivitySettingsOut(
        user_id=row.user_id,
        threshold_days=row.threshold_days,
        notification_methods=[m.value for m in settings_service.get_notification_methods(row)],
        is_paused=row.is_paused,
        pause_reason=row.pause_reason,
        paused_until=isoformat(row.paused_until),
        updated_at=isoformat(row.updated_at),
    )


@router.get("/settings", response_model=InactivitySettingsOut, summary="Inactivity settings")
def get_settings(
    user_id: int = Depends(track(ActivityType.API_REQUEST)),
    db: Session = Depends(get_db),
):
    return _settings_to_response(settings_service.get_or_create_settings(db, user_id))


@router.put(
    "/threshold",
    response_model=InactivitySettingsOut,
    summary="Change the inactivity threshold",
    responses={422: {"model": ErrorResponse}},
)
def update_threshold(
    payload: ThresholdUpdateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """The change itself is logged as a SETTINGS_CHANGE activity with old and new values."""
    old_threshold = settings_service.get_or_create_settings(db, user_id).threshold_days
    row = settings_service.update_threshold(db, user_id, payload.threshold_days)

    background_tasks.add_task(
        record_activity_in_background,
        session_factory,
        user_id,
        ActivityType.SETTINGS_CHANGE,
        metadata={
            "setting": "threshold_days",
            "old_value": old_threshold,
            "new_value": row.threshold_days,
        },
        client_type=detect_client_type(request),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _settings_to_response(row)


@router.put(
    "/notifications",
    response_model=InactivitySettingsOut,
    summary="Change reminder channels",
    responses={422: {"model": ErrorResponse}},
)
def update_notifications(
    payload: NotificationMethodsUpdateRequest,
    user_id: int = Depends(track(ActivityType.SETTINGS_CHANGE)),
    db: Session = Depends(get_db),
):
    row = settings_service.update_notification_methods(db, user_id, payload.notification_methods)
    return _settings_to_response(row)


@router.post("/pause", response_model=InactivitySettingsOut, summary="Pause inactivity tracking")
def pause(
    payload: PauseRequest,
    user_id: int = Depends(track(ActivityType.SETTINGS_CHANGE)),
    db: Session = Depends(get_db),
):
    row = settings_service.pause_tracking(db, user_id, reason=payload.reason, until=payload.until)
    return _settings_to_response(row)


@router.post("/resume", response_model=InactivitySettingsOut, summary="Resume inactivity tracking")
def resume(
    user_id: int = Depends(track(ActivityType.SETTINGS_CHANGE)),
    db: Session = Depends(get_db),
):
    return _settings_to_response(settings_service.resume_tracking(db, user_id))
