"""Initial schema: users, studios, sessions, bookings, purchases, payment events, notifications.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Users table
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default=sa.text("'CLIENT'")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("commission_bps", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("credit_balance >= 0", name="check_credit_balance_non_negative"),
        sa.CheckConstraint("role IN ('CLIENT', 'PARTNER', 'ADMIN')", name="check_user_role"),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Studios and classes (owned by the catalogue; read here)
    op.create_table(
        "studios",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("partner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_studios_id", "studios", ["id"])
    op.create_index("ix_studios_partner_id", "studios", ["partner_id"])

    op.create_table(
        "studio_classes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("studio_id", sa.Integer(), sa.ForeignKey("studios.id"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("max_capacity", sa.Integer(), nullable=False),
        sa.Column("base_price", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("max_capacity > 0", name="check_class_capacity_positive"),
        sa.CheckConstraint("base_price >= 0", name="check_class_price_non_negative"),
    )
    op.create_index("ix_studio_classes_id", "studio_classes", ["id"])
    op.create_index("ix_studio_classes_studio_id", "studio_classes", ["studio_id"])

    # Sessions: booked_count is the contended counter
    op.create_table(
        "class_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("class_id", sa.Integer(), sa.ForeignKey("studio_classes.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'SCHEDULED'")),
        sa.Column("booked_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        sa.CheckConstraint("end_time > start_time", name="check_session_time_order"),
        sa.CheckConstraint(
            "status IN ('SCHEDULED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="check_session_status",
        ),
    )
    op.create_index("ix_class_sessions_id", "class_sessions", ["id"])
    op.create_index("ix_class_sessions_class_id", "class_sessions", ["class_id"])
    # Upcoming-sessions listings filter and sort on start_time
    op.create_index("ix_class_sessions_start_time", "class_sessions", ["start_time"])

    # Bookings table
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("class_sessions.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'CONFIRMED'")),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("amount_paid >= 0", name="check_booking_amount_non_negative"),
        sa.CheckConstraint(
            "status IN ('CONFIRMED', 'CANCELLED', 'COMPLETED', 'NO_SHOW')",
            name="check_booking_status",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_code", "bookings", ["code"], unique=True)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_session_id", "bookings", ["session_id"])
    # Backstop for the duplicate check: one live booking per user per session.
    # Cancelled and no-show rows are history and may repeat.
    op.create_index(
        "uq_live_booking_per_user_session",
        "bookings",
        ["user_id", "session_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('CONFIRMED', 'COMPLETED')"),
    )

    # Purchases table
    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("package_id", sa.String(32), nullable=True),
        sa.Column("checkout_session_id", sa.String(255), nullable=False),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("credits > 0", name="check_purchase_credits_positive"),
        sa.CheckConstraint("amount >= 0", name="check_purchase_amount_non_negative"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED')",
            name="check_purchase_status",
        ),
    )
    op.create_index("ix_purchases_id", "purchases", ["id"])
    op.create_index("ix_purchases_user_id", "purchases", ["user_id"])
    op.create_index("ix_purchases_checkout_session_id", "purchases", ["checkout_session_id"], unique=True)
    op.create_index("ix_purchases_payment_intent_id", "purchases", ["payment_intent_id"])
    op.create_index("ix_purchases_user_created", "purchases", ["user_id", "created_at"])

    # Payment event journal: event_id uniqueness is the idempotency guard
    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_events_id", "payment_events", ["id"])
    op.create_index("ix_payment_events_event_id", "payment_events", ["event_id"], unique=True)

    # Notification outbox
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("payment_events")
    op.drop_table("purchases")
    op.drop_table("bookings")
    op.drop_table("class_sessions")
    op.drop_table("studio_classes")
    op.drop_table("studios")
    op.drop_table("users")
