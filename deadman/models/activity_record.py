"""
ActivityRecord — one row per tracked user action.

Append-only: rows are never updated or deleted. `signature` is an
HMAC-SHA256 over the canonical payload built in
deadman/services/activity.py, so tampering with user_id, type, client,
timestamp or metadata is detectable.

activity_metadata: JSON-encoded dict stored as Text.
created_at is written by the application (not the server) because it is
part of the signed payload.
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base, enum_values


class ActivityType(str, enum.Enum):
    LOGIN = "login"
    VAULT_ACCESS = "vault_access"
    SETTINGS_CHANGE = "settings_change"
    MANUAL_CHECKIN = "manual_checkin"
    API_REQUEST = "api_request"
    SUCCESSOR_MANAGEMENT = "successor_management"
    HANDOVER_CANCELLED = "handover_cancelled"


class ClientType(str, enum.Enum):
    WEB = "web"
    MOBILE = "mobile"
    CLI = "cli"
    API = "api"


class ActivityRecord(Base):
    __tablename__ = "activity_records"
    __table_args__ = (
        Index("ix_activity_records_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_type: Mapped[ActivityType] = mapped_column(
        Enum(ActivityType, name="activity_type_enum", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    client_type: Mapped[ClientType] = mapped_column(
        Enum(ClientType, name="client_type_enum", values_callable=enum_values),
        nullable=False,
        default=ClientType.WEB,
    )
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_metadata: Mapped[str | None] = mapped_column(
        "metadata", Text, nullable=True,
        comment="JSON-encoded dict; part of the signed payload",
    )
    signature: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
