"""
Notification outbox.

Rows are written in the same transaction as the booking or payment change
they describe, and pushed to the dispatcher only after that transaction
commits.
"""

from enum import StrEnum

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Text

from studio_booking.db.base import Base, TimestampMixin


class NotificationType(StrEnum):
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    CREDITS_PURCHASED = "CREDITS_PURCHASED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    REFUND_PROCESSED = "REFUND_PROCESSED"


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user={self.user_id}, type={self.type})>"
