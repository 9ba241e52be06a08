"""
InactivitySettings — per-user switch configuration.

Created lazily with defaults (90 days, email) the first time anything reads
it; see deadman/services/inactivity_settings.py.

notification_methods: JSON-encoded list of "email" | "sms" | "push".
A pause with `paused_until` NULL is permanent until resumed.
"""
from datetime import datetime
from sqlalchemy import Integer, Text, Boolean, DateTime, ForeignKey, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from deadman.db.base import Base


class InactivitySettings(Base):
    __tablename__ = "inactivity_settings"
    __table_args__ = (
        CheckConstraint(
            "threshold_days >= 30 AND threshold_days <= 365",
            name="ck_inactivity_threshold_range",
        ),
    )

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    threshold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    notification_methods: Mapped[str] = mapped_column(
        Text, nullable=False, default='["email"]',
    )
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    pause_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paused_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
