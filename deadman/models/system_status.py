"""
SystemStatusRecord — the platform downtime ledger.

Append-only transitions. A maintenance/outage row opens a downtime window
(downtime_end NULL); resuming closes the newest open window and appends an
"operational" row. Closed windows are subtracted from users' inactivity so
platform downtime never counts against them.
"""
import enum
from datetime import datetime
from sqlalchemy import Integer, Text, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base, enum_values


class SystemStatusType(str, enum.Enum):
    OPERATIONAL = "operational"
    MAINTENANCE = "maintenance"
    OUTAGE = "outage"


DOWNTIME_STATUSES = (SystemStatusType.MAINTENANCE, SystemStatusType.OUTAGE)


class SystemStatusRecord(Base):
    __tablename__ = "system_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    status: Mapped[SystemStatusType] = mapped_column(
        Enum(SystemStatusType, name="system_status_enum", values_callable=enum_values),
        nullable=False,
        default=SystemStatusType.OPERATIONAL,
        index=True,
    )
    downtime_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    downtime_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
