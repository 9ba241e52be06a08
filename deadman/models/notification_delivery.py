"""
NotificationDelivery — audit row for every outbound notification attempt.

Append-only. The escalation policy reads it for reminder cooldowns: only
"sent" / "delivered" rows count, so a failed attempt is retried naturally
on a later sweep.
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base, enum_values


class NotificationType(str, enum.Enum):
    FIRST_REMINDER = "first_reminder"      # 75%
    SECOND_REMINDER = "second_reminder"    # 85%
    FINAL_WARNING = "final_warning"        # 95%
    GRACE_PERIOD = "grace_period"          # 100%+
    HANDOVER_INITIATED = "handover_initiated"
    SUCCESSOR_NOTIFICATION = "successor_notification"


class NotificationMethod(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        Index(
            "ix_notification_deliveries_cooldown",
            "user_id", "notification_type", "status", "created_at",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    handover_process_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("handover_processes.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type_enum", values_callable=enum_values),
        nullable=False,
    )
    method: Mapped[NotificationMethod] = mapped_column(
        Enum(NotificationMethod, name="notification_method_enum", values_callable=enum_values),
        nullable=False,
    )
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, name="delivery_status_enum", values_callable=enum_values),
        nullable=False,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
