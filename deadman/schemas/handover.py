"""
Handover schemas.

GET  /handover/status              → HandoverProcessOut | null
POST /handover/cancel              → CancelHandoverRequest → CancelHandoverResponse
POST /handover/{id}/responses      → SuccessorResponseRequest → SuccessorResponseOut
"""
from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import BaseModel, Field


class HandoverProcessOut(BaseModel):
    id: int
    user_id: int
    status: str = Field(
        description=(
            '"grace_period" | "awaiting_successors" | "verification_pending" | '
            '"ready_for_transfer" | "completed" | "cancelled"'
        )
    )
    initiated_at: str
    grace_period_ends: str
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class CancelHandoverRequest(BaseModel):
    reason: Annotated[str, Field(
        min_length=1,
        max_length=500,
        description="Why the handover is being cancelled.",
    )] = "Cancelled by user"


class CancelHandoverResponse(BaseModel):
    cancelled: bool


class SuccessorResponseRequest(BaseModel):
    successor_id: int = Field(gt=0)
    verified: bool = Field(description="True to confirm, False to decline.")


class SuccessorResponseOut(BaseModel):
    handover_id: int
    successor_id: int
    verification_status: str = Field(description='"pending" | "verified" | "failed" | "expired"')
    verified_at: Optional[str] = None
    response_deadline: str
