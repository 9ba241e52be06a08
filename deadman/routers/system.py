"""
System router (admin).

GET  /system/status        — current ledger status and scanner stats
POST /system/maintenance   — open a downtime window
POST /system/resume        — close it
POST /system/scan          — run one sweep now and return its summary

All routes require `X-Admin-Token`.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from deadman.core.clock import isoformat
from deadman.core.errors import SweepFailedError
from deadman.db.base import get_db
from deadman.models.system_status import SystemStatusRecord, SystemStatusType
from deadman.routers.deps import get_scanner, require_admin
from deadman.schemas.common import ErrorResponse
from deadman.schemas.system import (
    MaintenanceRequest,
    ResumeRequest,
    ScannerStatsOut,
    SweepOut,
    SystemStatusOut,
)
from deadman.services.scanner import InactivityScanner
from deadman.services.system_status import (
    get_current_system_status,
    pause_system_tracking,
    resume_system_tracking,
)

router = APIRouter(
    prefix="/system",
    tags=["system"],
    dependencies=[Depends(require_admin)],
    responses={403: {"model": ErrorResponse}},
)


def _status_to_response(record: Optional[SystemStatusRecord]) -> SystemStatusOut:
    if record is None:
        return SystemStatusOut(status=SystemStatusType.OPERATIONAL.value)
    return SystemStatusOut(
        id=record.id,
        status=record.status.value,
        downtime_start=isoformat(record.downtime_start),
        downtime_end=isoformat(record.downtime_end),
        reason=record.reason,
        created_at=isoformat(record.created_at),
    )


@router.get("/status", summary="System status and scanner stats")
def system_status(
    db: Session = Depends(get_db),
    scanner: InactivityScanner = Depends(get_scanner),
):
    return {
        "status": _status_to_response(get_current_system_status(db)),
        "scanner": ScannerStatsOut(**scanner.get_stats()),
    }


@router.post("/maintenance", response_model=SystemStatusOut, summary="Start downtime")
def start_maintenance(payload: MaintenanceRequest, db: Session = Depends(get_db)):
    """Idempotent: while a window is open, the open window is returned."""
    return _status_to_response(pause_system_tracking(db, payload.reason, status=payload.status))


@router.post("/resume", response_model=SystemStatusOut, summary="End downtime")
def end_maintenance(payload: Optional[ResumeRequest] = None, db: Session = Depends(get_db)):
    reason = payload.reason if payload is not None else ResumeRequest().reason
    resume_system_tracking(db, reason=reason)
    return _status_to_response(get_current_system_status(db))


@router.post("/scan", response_model=SweepOut, summary="Run a sweep now")
async def run_scan(scanner: InactivityScanner = Depends(get_scanner)):
    """Joins the scheduled sweep if one is already running."""
    result = await scanner.run_now()
    if result is None:
        raise SweepFailedError()
    return SweepOut(
        started_at=isoformat(result.started_at),
        finished_at=isoformat(result.finished_at),
        total_users=result.total_users,
        batches=result.batches,
        checked=result.checked,
        skipped=result.skipped,
        failed=result.failed,
        handovers_advanced=result.handovers_advanced,
        failed_user_ids=result.failed_user_ids,
    )
