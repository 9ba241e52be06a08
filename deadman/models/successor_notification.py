"""
SuccessorNotification — a successor's part in one handover process.

Created when the grace period expires and successors are alerted. The
successor's response moves verification_status away from "pending" exactly
once; the process itself is advanced separately by the scanner.
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, DateTime, Enum, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base, enum_values


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class SuccessorNotification(Base):
    __tablename__ = "successor_notifications"
    __table_args__ = (
        UniqueConstraint(
            "handover_process_id", "successor_id", name="uq_successor_notification_process"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    handover_process_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("handover_processes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    successor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("successors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    notified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    verification_status: Mapped[VerificationStatus] = mapped_column(
        Enum(VerificationStatus, name="verification_status_enum", values_callable=enum_values),
        nullable=False,
        default=VerificationStatus.PENDING,
        index=True,
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_deadline: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
