"""
Handover router.

GET  /handover/status             — the caller's non-terminal handover, or null
POST /handover/cancel             — the caller cancels their handover
POST /handover/{id}/responses     — a successor confirms or declines
"""
from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Request
from sqlalchemy.orm import Session

from deadman.core.clock import isoformat
from deadman.db.base import get_db
from deadman.models.activity_record import ActivityType
from deadman.models.handover_process import HandoverProcess
from deadman.routers.deps import (
    client_ip,
    detect_client_type,
    get_current_user_id,
    get_session_factory,
)
from deadman.schemas.common import ErrorResponse
from deadman.schemas.handover import (
    CancelHandoverRequest,
    CancelHandoverResponse,
    HandoverProcessOut,
    SuccessorResponseOut,
    SuccessorResponseRequest,
)
from deadman.services.activity import record_activity_in_background
from deadman.services.handover import (
    cancel_handover,
    get_handover_status,
    process_successor_response,
)

router = APIRouter(prefix="/handover", tags=["handover"])


def _process_to_response(process: HandoverProcess) -> HandoverProcessOut:
    try:
        metadata = json.loads(process.process_metadata) if process.process_metadata else None
    except (ValueError, TypeError):
        metadata = None
    return HandoverProcessOut(
        id=process.id,
        user_id=process.user_id,
        status=process.status.value,
        initiated_at=isoformat(process.initiated_at),
        grace_period_ends=isoformat(process.grace_period_ends),
        completed_at=isoformat(process.completed_at),
        cancelled_at=isoformat(process.cancelled_at),
        cancellation_reason=process.cancellation_reason,
        metadata=metadata,
    )


@router.get("/status", response_model=Optional[HandoverProcessOut], summary="Current handover")
def handover_status(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    process = get_handover_status(db, user_id)
    return _process_to_response(process) if process is not None else None


@router.post("/cancel", response_model=CancelHandoverResponse, summary="Cancel my handover")
def cancel(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: Optional[CancelHandoverRequest] = None,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """`cancelled` is false when there was nothing to cancel."""
    reason = payload.reason if payload is not None else CancelHandoverRequest().reason
    cancelled = cancel_handover(db, user_id, reason)
    if cancelled:
        background_tasks.add_task(
            record_activity_in_background,
            session_factory,
            user_id,
            ActivityType.HANDOVER_CANCELLED,
            metadata={"reason": reason},
            client_type=detect_client_type(request),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    return CancelHandoverResponse(cancelled=cancelled)


@router.post(
    "/{handover_id}/responses",
    response_model=SuccessorResponseOut,
    summary="Record a successor's response",
    responses={
        404: {"model": ErrorResponse, "description": "Unknown handover or successor."},
        409: {"model": ErrorResponse, "description": "Handover already completed or cancelled."},
    },
)
def successor_response(
    payload: SuccessorResponseRequest,
    handover_id: int = Path(gt=0),
    db: Session = Depends(get_db),
):
    """
    The first response from a successor is final. Recording a response does
    not move the handover; the scanner does that on its next sweep.
    """
    row = process_successor_response(db, handover_id, payload.successor_id, payload.verified)
    return SuccessorResponseOut(
        handover_id=row.handover_process_id,
        successor_id=row.successor_id,
        verification_status=row.verification_status.value,
        verified_at=isoformat(row.verified_at),
        response_deadline=isoformat(row.response_deadline),
    )
