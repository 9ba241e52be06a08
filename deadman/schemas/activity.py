"""
Activity request / response schemas.

POST /activity/check-in          → CheckInRequest      → CheckInResponse
POST /activity/check-in/token    → TokenCheckInRequest → CheckInResponse
GET  /activity/status            → ActivityStatusOut | null
GET  /activity/history           → ActivityHistoryResponse
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, Field

from deadman.schemas.common import PaginationOut


class ActivityStatusOut(BaseModel):
    last_activity: str = Field(description="UTC timestamp the inactivity clock runs from.")
    inactivity_duration_seconds: float
    threshold_percentage: float = Field(ge=0, le=100)
    next_reminder_due: Optional[str] = Field(
        default=None,
        description="When the next reminder band (75/85/95/100%) is reached. Null past 100%.",
    )
    handover_status: str = Field(
        description='"normal" | "reminder_phase" | "grace_period" | "handover_active"'
    )
    time_remaining_seconds: float
    downtime_excluded_seconds: float = Field(
        description="Platform downtime subtracted from the inactivity duration."
    )
    threshold_days: int


class CheckInRequest(BaseModel):
    note: Optional[Annotated[str, Field(max_length=500)]] = Field(
        default=None,
        description="Optional free-text note stored with the check-in.",
    )


class TokenCheckInRequest(BaseModel):
    token: Annotated[str, Field(
        min_length=1,
        max_length=256,
        description="Raw token from the emailed check-in link.",
    )]


class CheckInResponse(BaseModel):
    success: bool = True
    message: str
    handover_cancelled: bool = Field(
        description="True if an active handover was cancelled by this check-in."
    )
    status: Optional[ActivityStatusOut] = None


class ActivityRecordOut(BaseModel):
    id: int
    activity_type: str
    client_type: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: str


class ActivityHistoryResponse(BaseModel):
    activities: list[ActivityRecordOut]
    total: int
    has_more: bool
    pagination: PaginationOut
