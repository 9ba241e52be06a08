"""
HandoverProcess — one run of the handover state machine for a user.

    grace_period -> awaiting_successors -> verification_pending
                 -> ready_for_transfer -> completed
    any non-terminal status -> cancelled

Rows are only ever moved forward by conditional UPDATEs keyed on the
expected prior status (deadman/services/handover.py).

The partial unique index allows at most one non-terminal process per user;
completed and cancelled rows accumulate as history.

process_metadata: JSON-encoded dict (trigger reason, grace period length).
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, Text, DateTime, Enum, ForeignKey, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base, enum_values


class HandoverProcessStatus(str, enum.Enum):
    GRACE_PERIOD = "grace_period"
    AWAITING_SUCCESSORS = "awaiting_successors"
    VERIFICATION_PENDING = "verification_pending"
    READY_FOR_TRANSFER = "ready_for_transfer"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (HandoverProcessStatus.COMPLETED, HandoverProcessStatus.CANCELLED)
ACTIVE_STATUSES = tuple(s for s in HandoverProcessStatus if s not in TERMINAL_STATUSES)

_ACTIVE_PREDICATE = text("status NOT IN ('completed', 'cancelled')")


class HandoverProcess(Base):
    __tablename__ = "handover_processes"
    __table_args__ = (
        Index(
            "uq_handover_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[HandoverProcessStatus] = mapped_column(
        Enum(HandoverProcessStatus, name="handover_status_enum", values_callable=enum_values),
        nullable=False,
        default=HandoverProcessStatus.GRACE_PERIOD,
        index=True,
    )
    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    grace_period_ends: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    process_metadata: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
