"""
System status schemas (admin routes).
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deadman.models.system_status import SystemStatusType


class SystemStatusOut(BaseModel):
    id: Optional[int] = None
    status: str
    downtime_start: Optional[str] = None
    downtime_end: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[str] = None


class MaintenanceRequest(BaseModel):
    reason: Annotated[str, Field(min_length=1, max_length=500)] = "Scheduled maintenance"
    status: SystemStatusType = Field(
        default=SystemStatusType.MAINTENANCE,
        description='"maintenance" or "outage".',
    )

    @field_validator("status")
    @classmethod
    def must_be_downtime(cls, v: SystemStatusType) -> SystemStatusType:
        if v == SystemStatusType.OPERATIONAL:
            raise ValueError("use POST /system/resume to return to operational")
        return v


class ResumeRequest(BaseModel):
    reason: Annotated[str, Field(min_length=1, max_length=500)] = "System resumed"


class SweepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started_at: str
    finished_at: Optional[str] = None
    total_users: int
    batches: int
    checked: int
    skipped: int
    failed: int
    handovers_advanced: int
    failed_user_ids: list[int]


class ScannerStatsOut(BaseModel):
    is_running: bool
    check_interval: float
    active_users: Optional[int] = None
    system_status: str
    last_sweep: Optional[dict[str, Any]] = None
