"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    "activity_type_enum": (
        "login", "vault_access", "settings_change", "manual_checkin",
        "api_request", "successor_management", "handover_cancelled",
    ),
    "client_type_enum": ("web", "mobile", "cli", "api"),
    "handover_status_enum": (
        "grace_period", "awaiting_successors", "verification_pending",
        "ready_for_transfer", "completed", "cancelled",
    ),
    "verification_status_enum": ("pending", "verified", "failed", "expired"),
    "notification_type_enum": (
        "first_reminder", "second_reminder", "final_warning",
        "grace_period", "handover_initiated", "successor_notification",
    ),
    "notification_method_enum": ("email", "sms", "push"),
    "delivery_status_enum": ("sent", "delivered", "failed"),
    "system_status_enum": ("operational", "maintenance", "outage"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # --- ENUM types ---
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(op.get_bind(), checkfirst=True)

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_last_login_at", "users", ["last_login_at"])

    # --- successors ---
    op.create_table(
        "successors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("handover_delay_days", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "email", name="uq_successor_user_email"),
    )
    op.create_index("ix_successors_id", "successors", ["id"])
    op.create_index("ix_successors_user_id", "successors", ["user_id"])

    # --- activity_records (append-only) ---
    op.create_table(
        "activity_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("activity_type", _enum("activity_type_enum"), nullable=False),
        sa.Column("client_type", _enum("client_type_enum"), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("signature", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_activity_records_id", "activity_records", ["id"])
    op.create_index("ix_activity_records_user_id", "activity_records", ["user_id"])
    op.create_index("ix_activity_records_activity_type", "activity_records", ["activity_type"])
    op.create_index("ix_activity_records_created_at", "activity_records", ["created_at"])
    op.create_index("ix_activity_records_user_created", "activity_records", ["user_id", "created_at"])

    # --- inactivity_settings ---
    op.create_table(
        "inactivity_settings",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("threshold_days", sa.Integer(), nullable=False, server_default="90"),
        sa.Column("notification_methods", sa.Text(), nullable=False, server_default='["email"]'),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("paused_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint(
            "threshold_days >= 30 AND threshold_days <= 365",
            name="ck_inactivity_threshold_range",
        ),
    )
    op.create_index("ix_inactivity_settings_is_paused", "inactivity_settings", ["is_paused"])

    # --- handover_processes ---
    op.create_table(
        "handover_processes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", _enum("handover_status_enum"), nullable=False),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("grace_period_ends", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_handover_processes_id", "handover_processes", ["id"])
    op.create_index("ix_handover_processes_user_id", "handover_processes", ["user_id"])
    op.create_index("ix_handover_processes_status", "handover_processes", ["status"])
    op.create_index("ix_handover_processes_grace_period_ends", "handover_processes", ["grace_period_ends"])
    # At most one non-terminal process per user.
    op.create_index(
        "uq_handover_one_active_per_user",
        "handover_processes",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('completed', 'cancelled')"),
    )

    # --- successor_notifications ---
    op.create_table(
        "successor_notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "handover_process_id", sa.Integer(),
            sa.ForeignKey("handover_processes.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("successor_id", sa.Integer(), sa.ForeignKey("successors.id", ondelete="CASCADE"), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verification_status", _enum("verification_status_enum"), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("handover_process_id", "successor_id", name="uq_successor_notification_process"),
    )
    op.create_index("ix_successor_notifications_id", "successor_notifications", ["id"])
    op.create_index(
        "ix_successor_notifications_handover_process_id", "successor_notifications", ["handover_process_id"]
    )
    op.create_index("ix_successor_notifications_successor_id", "successor_notifications", ["successor_id"])
    op.create_index(
        "ix_successor_notifications_verification_status", "successor_notifications", ["verification_status"]
    )
    op.create_index(
        "ix_successor_notifications_response_deadline", "successor_notifications", ["response_deadline"]
    )

    # --- notification_deliveries (append-only) ---
    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "handover_process_id", sa.Integer(),
            sa.ForeignKey("handover_processes.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("notification_type", _enum("notification_type_enum"), nullable=False),
        sa.Column("method", _enum("notification_method_enum"), nullable=False),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("status", _enum("delivery_status_enum"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_deliveries_id", "notification_deliveries", ["id"])
    op.create_index("ix_notification_deliveries_user_id", "notification_deliveries", ["user_id"])
    op.create_index(
        "ix_notification_deliveries_handover_process_id", "notification_deliveries", ["handover_process_id"]
    )
    op.create_index("ix_notification_deliveries_status", "notification_deliveries", ["status"])
    op.create_index("ix_notification_deliveries_created_at", "notification_deliveries", ["created_at"])
    op.create_index(
        "ix_notification_deliveries_cooldown",
        "notification_deliveries",
        ["user_id", "notification_type", "status", "created_at"],
    )

    # --- checkin_tokens ---
    op.create_table(
        "checkin_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_checkin_tokens_id", "checkin_tokens", ["id"])
    op.create_index("ix_checkin_tokens_user_id", "checkin_tokens", ["user_id"])
    op.create_index("ix_checkin_tokens_token_hash", "checkin_tokens", ["token_hash"], unique=True)
    op.create_index("ix_checkin_tokens_expires_at", "checkin_tokens", ["expires_at"])

    # --- system_status (downtime ledger) ---
    op.create_table(
        "system_status",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("status", _enum("system_status_enum"), nullable=False),
        sa.Column("downtime_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("downtime_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_system_status_id", "system_status", ["id"])
    op.create_index("ix_system_status_status", "system_status", ["status"])
    op.create_index("ix_system_status_created_at", "system_status", ["created_at"])


def downgrade() -> None:
    op.drop_table("system_status")
    op.drop_table("checkin_tokens")
    op.drop_table("notification_deliveries")
    op.drop_table("successor_notifications")
    op.drop_table("handover_processes")
    op.drop_table("inactivity_settings")
    op.drop_table("activity_records")
    op.drop_table("successors")
    op.drop_table("users")

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
