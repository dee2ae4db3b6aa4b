"""
FastAPI dependencies wiring the services to process-wide collaborators.

Tests override get_ledger, get_clock, get_dispatcher, get_payment_processor
and get_admission through app.dependency_overrides.
"""

from functools import lru_cache

from fastapi import Depends

from studio_booking.db.base import utcnow
from studio_booking.db.ledger import LedgerStore
from studio_booking.db.session import get_ledger
from studio_booking.services.booking_service import BookingAdmissionController, Clock
from studio_booking.services.admission_service import AdmissionStrategy
from studio_booking.services.notifications import LoggingNotificationDispatcher, NotificationDispatcher
from studio_booking.services.payment_processor import PaymentProcessor, StripeProcessor
from studio_booking.services.payment_service import PaymentReconciliationEngine
from studio_booking.services.strategy_factory import get_admission


def get_clock() -> Clock:
    return utcnow


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    return LoggingNotificationDispatcher()


@lru_cache()
def get_payment_processor() -> PaymentProcessor:
    return StripeProcessor()


def get_booking_controller(
    ledger: LedgerStore = Depends(get_ledger),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    admission: AdmissionStrategy = Depends(get_admission),
    clock: Clock = Depends(get_clock),
) -> BookingAdmissionController:
    return BookingAdmissionController(ledger, dispatcher, admission, clock=clock)


def get_payment_engine(
    ledger: LedgerStore = Depends(get_ledger),
    processor: PaymentProcessor = Depends(get_payment_processor),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(ledger, processor, dispatcher, clock=clock)
