"""
Purchase model: one attempt to convert a payment into credits.

Key design decisions:
- `checkout_session_id` is unique: exactly one purchase per processor
  checkout session, created before the checkout reference leaves the API.
- The PENDING -> COMPLETED transition is the only place credits are issued;
  it is a compare-and-swap on `status`, so redelivered notifications and
  concurrent status polls cannot credit twice.
"""

from enum import StrEnum

from sqlalchemy import Column, Integer, String, ForeignKey, JSON, Index, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin


class PurchaseStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class Purchase(Base, TimestampMixin):
    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # currency subunits
    currency = Column(String(3), nullable=False, default="usd")
    package_id = Column(String(32), nullable=True)
    checkout_session_id = Column(String(255), unique=True, nullable=False, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=PurchaseStatus.PENDING)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("credits > 0", name="check_purchase_credits_positive"),
        CheckConstraint("amount >= 0", name="check_purchase_amount_non_negative"),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED', 'REFUNDED')",
            name="check_purchase_status",
        ),
        Index("ix_purchases_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Purchase(id={self.id}, user={self.user_id}, credits={self.credits}, status={self.status})>"
