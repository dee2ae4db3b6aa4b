"""
Studio, class and session models.

Studios and classes are managed elsewhere; this service reads them and only
writes the session's `booked_count`.

Key design decisions:
- `booked_count` is denormalized (avoids COUNT over bookings on the hot path)
  and always equals the number of CONFIRMED + COMPLETED bookings.
- CHECK constraint keeps the counter non-negative; the capacity bound itself is
  enforced by the conditional increment in the capacity tracker, because the
  capacity lives on the class row.
- Index on `start_time` for the upcoming-sessions queries.
"""

from enum import StrEnum

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Index, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin, UTCDateTime


class SessionStatus(StrEnum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Studio(Base, TimestampMixin):
    __tablename__ = "studios"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    partner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Studio(id={self.id}, name={self.name}, partner={self.partner_id})>"


class StudioClass(Base, TimestampMixin):
    __tablename__ = "studio_classes"

    id = Column(Integer, primary_key=True, index=True)
    studio_id = Column(Integer, ForeignKey("studios.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    max_capacity = Column(Integer, nullable=False)
    base_price = Column(Integer, nullable=False, default=0)  # whole credits
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="check_class_capacity_positive"),
        CheckConstraint("base_price >= 0", name="check_class_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<StudioClass(id={self.id}, title={self.title}, capacity={self.max_capacity})>"


class ClassSession(Base, TimestampMixin):
    __tablename__ = "class_sessions"

    id = Column(Integer, primary_key=True, index=True)
    class_id = Column(Integer, ForeignKey("studio_classes.id"), nullable=False, index=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default=SessionStatus.SCHEDULED)
    booked_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("booked_count >= 0", name="check_booked_count_non_negative"),
        CheckConstraint("end_time > start_time", name="check_session_time_order"),
        CheckConstraint(
            "status IN ('SCHEDULED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="check_session_status",
        ),
        Index("ix_class_sessions_start_time", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<ClassSession(id={self.id}, class={self.class_id}, booked={self.booked_count})>"
