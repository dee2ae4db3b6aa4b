"""
Booking model representing a user's claim on a class session.

Key design decisions:
- Partial unique index on (user_id, session_id) for CONFIRMED/COMPLETED rows:
  one live booking per user per session, while cancelled history is kept.
- Status field allows cancellation without deleting records.
- `code` is the public, unguessable reference used for partner check-in.
- `amount_paid` snapshots the class price at booking time.
"""

from enum import StrEnum

from sqlalchemy import Column, Integer, String, ForeignKey, Index, CheckConstraint, text

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime


class BookingStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


# Statuses that hold a seat in the session
SEAT_HOLDING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)

_SEAT_HOLDING_SQL = text("status IN ('CONFIRMED', 'COMPLETED')")


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(16), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("class_sessions.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED)
    checked_in_at = Column(UTCDateTime, nullable=True)
    amount_paid = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        # One live booking per user per session
        Index(
            "uq_live_booking_per_user_session",
            "user_id",
            "session_id",
            unique=True,
            postgresql_where=_SEAT_HOLDING_SQL,
            sqlite_where=_SEAT_HOLDING_SQL,
        ),
        CheckConstraint("amount_paid >= 0", name="check_booking_amount_non_negative"),
        CheckConstraint(
            "status IN ('CONFIRMED', 'CANCELLED', 'COMPLETED', 'NO_SHOW')",
            name="check_booking_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, user={self.user_id}, session={self.session_id}, status={self.status})>"
