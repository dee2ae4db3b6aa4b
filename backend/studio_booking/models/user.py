"""
User model with the prepaid credit balance.

Key design decisions:
- `credit_balance` is a hot, contended counter. It is only changed through
  conditional UPDATE statements inside ledger transactions, never by
  read-modify-write in Python.
- CHECK constraint keeps the balance non-negative at the DB level.
"""

from enum import StrEnum

from sqlalchemy import Column, Integer, String, Boolean, CheckConstraint

from studio_booking.db.base import Base, TimestampMixin


class UserRole(StrEnum):
    CLIENT = "CLIENT"
    PARTNER = "PARTNER"
    ADMIN = "ADMIN"


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CLIENT)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    credit_balance = Column(Integer, nullable=False, default=0)
    # Partners only: platform commission in basis points (1500 = 15%)
    commission_bps = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="check_credit_balance_non_negative"),
        CheckConstraint("role IN ('CLIENT', 'PARTNER', 'ADMIN')", name="check_user_role"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, credits={self.credit_balance})>"
