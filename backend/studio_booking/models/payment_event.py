"""
Payment event journal (idempotency table).

Every processor notification is recorded by its event id. The unique
constraint, not an application-level lookup, decides which delivery is the
first one.
"""

from sqlalchemy import Column, Integer, String, Boolean, JSON, Text

from studio_booking.db.base import Base, UTCDateTime, utcnow


class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)  # e.g. "evt_1Abc..."
    event_type = Column(String(255), nullable=False)  # e.g. "checkout.session.completed"
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    received_at = Column(UTCDateTime, nullable=False, default=utcnow)
    claimed_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<PaymentEvent {self.event_id} ({self.event_type}) processed={self.processed}>"
