"""
Inactivity settings schemas.

GET  /inactivity/settings        → InactivitySettingsOut
PUT  /inactivity/threshold       → ThresholdUpdateRequest
PUT  /inactivity/notifications   → NotificationMethodsUpdateRequest
POST /inactivity/pause           → PauseRequest
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deadman.models.notification_delivery import NotificationMethod


class InactivitySettingsOut(BaseModel):
    user_id: int
    threshold_days: int
    notification_methods: list[str]
    is_paused: bool
    pause_reason: Optional[str] = None
    paused_until: Optional[str] = None
    updated_at: Optional[str] = None


class ThresholdUpdateRequest(BaseModel):
    threshold_days: Annotated[int, Field(
        ge=30,
        le=365,
        description="Days of inactivity before a handover starts.",
        examples=[90],
    )]


class NotificationMethodsUpdateRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    notification_methods: Annotated[list[NotificationMethod], Field(
        min_length=1,
        description="Preferred reminder channels, in order.",
        examples=[["email", "sms"]],
    )]


class PauseRequest(BaseModel):
    reason: Optional[Annotated[str, Field(max_length=500)]] = None
    until: Optional[datetime] = Field(
        default=None,
        description="Resume automatically at this time. Omit to pause until resumed.",
    )

    @field_validator("until")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("until must include a timezone offset")
        return v
