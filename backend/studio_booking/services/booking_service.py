"""
Booking admission controller.

Orchestrates booking creation, cancellation, check-in and no-show marking
against the capacity tracker and the ledger store, and enforces the time
window policies:

  - cancellation closes CANCELLATION_CUTOFF_MINUTES before session start
  - check-in is open from CHECK_IN_OPENS_MINUTES before start until
    CHECK_IN_CLOSES_MINUTES after start (both ends inclusive)
  - no-shows can only be marked once the session has ended

Every operation returns a Result. Ownership checks run before any mutation.
Lock order is always session row first, then booking rows, so cancellation
and no-show marking cannot deadlock each other on PostgreSQL.

Notifications are written to the outbox inside the transaction and
dispatched only after it commits.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import (
    booking_latency,
    record_admission,
    record_booking_attempt,
    record_booking_transition,
)
from studio_booking.db.base import utcnow
from studio_booking.db.ledger import LedgerStore
from studio_booking.domain.errors import ErrorKind, Result
from studio_booking.models.booking import Booking, BookingStatus
from studio_booking.models.notification import NotificationType
from studio_booking.models.studio import ClassSession, Studio, StudioClass
from studio_booking.models.user import User
from studio_booking.services.capacity_tracker import (
    BOOKING_CODE_ATTEMPTS,
    AlreadyBooked,
    CapacityTracker,
    Reserved,
    ReserveOutcome,
    SessionFull,
    SessionMissing,
    SessionNotBookable,
    is_live_booking_conflict,
)
from studio_booking.services.admission_service import AdmissionStrategy
from studio_booking.services.notifications import (
    NotificationDispatcher,
    NotificationMessage,
    deliver,
    queue_notification,
)
from studio_booking.services.pricing import PayoutSplit, compute_payout_split

logger = get_logger(__name__)

Clock = Callable[[], datetime]

BOOKING_NOT_FOUND = "Booking not found"
SESSION_NOT_FOUND = "Session not found"


@dataclass(frozen=True)
class SessionEarnings:
    session_id: int
    bookings: int
    gross_credits: int
    commission_bps: int
    split: PayoutSplit


class BookingAdmissionController:
    def __init__(
        self,
        ledger: LedgerStore,
        dispatcher: NotificationDispatcher,
        admission: AdmissionStrategy,
        tracker: Optional[CapacityTracker] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._admission = admission
        self._tracker = tracker or CapacityTracker()
        self._clock = clock
        self.cancellation_cutoff = timedelta(minutes=settings.CANCELLATION_CUTOFF_MINUTES)
        self.check_in_opens = timedelta(minutes=settings.CHECK_IN_OPENS_MINUTES)
        self.check_in_closes = timedelta(minutes=settings.CHECK_IN_CLOSES_MINUTES)
        self.unit_amount = settings.CREDIT_UNIT_AMOUNT
        self.default_commission_bps = settings.DEFAULT_COMMISSION_BPS

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_booking(self, user_id: int, session_id: int) -> Result[Booking]:
        if not await self._admission.admit(session_id):
            record_admission(False)
            record_booking_attempt("full")
            logger.info("booking_rejected_at_gate", session_id=session_id, user_id=user_id)
            return Result.failure(ErrorKind.SESSION_FULL, "Session is full")
        record_admission(True)

        try:
            with booking_latency.time():
                outcome, messages = await self._reserve(user_id, session_id)
        finally:
            await self._admission.release(session_id)

        if isinstance(outcome, Reserved):
            record_booking_attempt("success")
            logger.info(
                "booking_created",
                booking_id=outcome.booking.id,
                user_id=user_id,
                session_id=session_id,
                amount_paid=outcome.booking.amount_paid,
                remaining=outcome.remaining,
            )
            await deliver(self._dispatcher, messages)
            return Result.success(outcome.booking)

        if isinstance(outcome, SessionFull):
            record_booking_attempt("full")
            return Result.failure(ErrorKind.SESSION_FULL, "Session is full")
        if isinstance(outcome, AlreadyBooked):
            record_booking_attempt("duplicate")
            logger.info("booking_rejected_duplicate", user_id=user_id, session_id=session_id)
            return Result.failure(
                ErrorKind.DUPLICATE_BOOKING, "You already have a booking for this session"
            )
        if isinstance(outcome, SessionNotBookable):
            record_booking_attempt("not_bookable")
            return Result.failure(ErrorKind.SESSION_NOT_BOOKABLE, outcome.reason)
        if isinstance(outcome, SessionMissing):
            record_booking_attempt("not_found")
            return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
        raise AssertionError(f"unhandled reservation outcome: {outcome!r}")

    async def _reserve(self, user_id: int, session_id: int) -> tuple[ReserveOutcome, list[NotificationMessage]]:
        for attempt in range(1, BOOKING_CODE_ATTEMPTS + 1):
            messages = []
            try:
                async with self._ledger.transaction() as db:
                    outcome = await self._tracker.try_reserve(
                        db, session_id=session_id, user_id=user_id, now=self._clock()
                    )
                    if isinstance(outcome, Reserved):
                        messages.append(await queue_notification(
                            db,
                            user_id,
                            NotificationType.BOOKING_CONFIRMED,
                            "Booking Confirmed",
                            f"Your booking for {outcome.studio_class.title} has been confirmed. "
                            f"Booking code: {outcome.booking.code}",
                        ))
                        # Under the session row lock, so gate writes land in commit order
                        await self._admission.sync(session_id, outcome.remaining)
                return outcome, messages
            except IntegrityError as e:
                if is_live_booking_conflict(e):
                    # A concurrent request for the same user won
                    return AlreadyBooked(booking_id=None), []
                if attempt == BOOKING_CODE_ATTEMPTS:
                    raise
                logger.warning("booking_code_collision", session_id=session_id, attempt=attempt)
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_booking(self, booking_id: int, user_id: int) -> Result[Booking]:
        now = self._clock()
        async with self._ledger.transaction() as db:
            booking = await db.get(Booking, booking_id)
            if booking is None:
                return Result.failure(ErrorKind.NOT_FOUND, BOOKING_NOT_FOUND)
            if booking.user_id != user_id:
                return Result.failure(ErrorKind.ACCESS_DENIED, BOOKING_NOT_FOUND)

            session = await self._tracker.lock_session(db, booking.session_id)
            await db.refresh(booking)
            if booking.status != BookingStatus.CONFIRMED:
                return Result.failure(
                    ErrorKind.NOT_CONFIRMED, "Only confirmed bookings can be cancelled"
                )
            if session.start_time - now < self.cancellation_cutoff:
                hours = int(self.cancellation_cutoff.total_seconds() // 3600)
                return Result.failure(
                    ErrorKind.TOO_LATE_TO_CANCEL,
                    f"Cannot cancel booking within {hours} hours of session start",
                )

            if not await self._tracker.release(db, booking, BookingStatus.CANCELLED):
                return Result.failure(
                    ErrorKind.NOT_CONFIRMED, "Only confirmed bookings can be cancelled"
                )
            # TODO: return booking.amount_paid to the balance here once bookings debit credits
            studio_class = await db.get(StudioClass, session.class_id)
            await db.refresh(session)
            await self._admission.sync(booking.session_id, studio_class.max_capacity - session.booked_count)
            message = await queue_notification(
                db,
                user_id,
                NotificationType.BOOKING_CANCELLED,
                "Booking Cancelled",
                f"Your booking for {studio_class.title} has been cancelled.",
            )

        record_booking_transition(BookingStatus.CANCELLED)
        logger.info(
            "booking_cancelled",
            booking_id=booking.id,
            user_id=user_id,
            session_id=booking.session_id,
        )
        await deliver(self._dispatcher, [message])
        return Result.success(booking)

    # ------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------

    async def check_in(self, booking_id: int, user_id: int) -> Result[Booking]:
        async with self._ledger.transaction() as db:
            booking = await db.get(Booking, booking_id)
            if booking is None:
                return Result.failure(ErrorKind.NOT_FOUND, BOOKING_NOT_FOUND)
            if booking.user_id != user_id:
                return Result.failure(ErrorKind.ACCESS_DENIED, BOOKING_NOT_FOUND)
            result = await self._check_in(db, booking, self._clock())

        if result.ok:
            record_booking_transition(BookingStatus.COMPLETED)
            logger.info("booking_checked_in", booking_id=booking.id, user_id=user_id)
        return result

    async def check_in_by_code(self, code: str, partner_id: int) -> Result[Booking]:
        """Partner-side check-in at the studio desk, by booking code."""
        async with self._ledger.transaction() as db:
            booking = await self._booking_by_code(db, code)
            if booking is None:
                return Result.failure(ErrorKind.NOT_FOUND, BOOKING_NOT_FOUND)
            session = await db.get(ClassSession, booking.session_id)
            studio = await self._studio_for(db, session)
            if studio.partner_id != partner_id:
                return Result.failure(ErrorKind.ACCESS_DENIED, BOOKING_NOT_FOUND)
            result = await self._check_in(db, booking, self._clock())

        if result.ok:
            record_booking_transition(BookingStatus.COMPLETED)
            logger.info("booking_checked_in", booking_id=booking.id, partner_id=partner_id)
        return result

    async def _check_in(self, db: AsyncSession, booking: Booking, now: datetime) -> Result[Booking]:
        if booking.checked_in_at is not None:
            return Result.failure(ErrorKind.ALREADY_CHECKED_IN, "Already checked in")
        if booking.status != BookingStatus.CONFIRMED:
            return Result.failure(ErrorKind.NOT_CONFIRMED, "Booking is not confirmed")

        session = await db.get(ClassSession, booking.session_id)
        opens_at = session.start_time - self.check_in_opens
        closes_at = session.start_time + self.check_in_closes
        if now < opens_at or now > closes_at:
            return Result.failure(
                ErrorKind.OUTSIDE_CHECK_IN_WINDOW,
                f"Check-in is only available {self._minutes(self.check_in_opens)} minutes before "
                f"to {self._minutes(self.check_in_closes)} minutes after session start",
            )

        transitioned = await db.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.status == BookingStatus.CONFIRMED,
                Booking.checked_in_at.is_(None),
            )
            .values(status=BookingStatus.COMPLETED, checked_in_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(booking)
        if transitioned.rowcount != 1:
            if booking.checked_in_at is not None:
                return Result.failure(ErrorKind.ALREADY_CHECKED_IN, "Already checked in")
            return Result.failure(ErrorKind.NOT_CONFIRMED, "Booking is not confirmed")
        return Result.success(booking)

    # ------------------------------------------------------------------
    # No-shows
    # ------------------------------------------------------------------

    async def mark_no_show(self, session_id: int, partner_id: int) -> Result[int]:
        async with self._ledger.transaction() as db:
            session = await self._tracker.lock_session(db, session_id)
            if session is None:
                return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
            studio = await self._studio_for(db, session)
            if studio.partner_id != partner_id:
                return Result.failure(ErrorKind.ACCESS_DENIED, SESSION_NOT_FOUND)
            if self._clock() < session.end_time:
                return Result.failure(ErrorKind.SESSION_NOT_ENDED, "Session has not ended yet")

            count = await self._tracker.release_unattended(db, session_id)

        record_booking_transition(BookingStatus.NO_SHOW, count)
        logger.info("no_shows_marked", session_id=session_id, partner_id=partner_id, count=count)
        return Result.success(count)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: int, user_id: int) -> Result[Booking]:
        async with self._ledger.transaction() as db:
            booking = await db.get(Booking, booking_id)
        if booking is None:
            return Result.failure(ErrorKind.NOT_FOUND, BOOKING_NOT_FOUND)
        if booking.user_id != user_id:
            return Result.failure(ErrorKind.ACCESS_DENIED, BOOKING_NOT_FOUND)
        return Result.success(booking)

    async def get_booking_by_code(self, code: str, partner_id: int) -> Result[Booking]:
        async with self._ledger.transaction() as db:
            booking = await self._booking_by_code(db, code)
            if booking is None:
                return Result.failure(ErrorKind.NOT_FOUND, BOOKING_NOT_FOUND)
            session = await db.get(ClassSession, booking.session_id)
            studio = await self._studio_for(db, session)
        if studio.partner_id != partner_id:
            return Result.failure(ErrorKind.ACCESS_DENIED, BOOKING_NOT_FOUND)
        return Result.success(booking)

    async def list_user_bookings(self, user_id: int) -> list[Booking]:
        """Most recent first; id breaks ties between bookings created in the same instant."""
        async with self._ledger.transaction() as db:
            result = await db.execute(
                select(Booking)
                .where(Booking.user_id == user_id)
                .order_by(Booking.created_at.desc(), Booking.id.desc())
            )
            return list(result.scalars().all())

    async def session_earnings(self, session_id: int, partner_id: int) -> Result[SessionEarnings]:
        """Gross credits taken for a session and the partner/platform split."""
        async with self._ledger.transaction() as db:
            session = await db.get(ClassSession, session_id)
            if session is None:
                return Result.failure(ErrorKind.NOT_FOUND, SESSION_NOT_FOUND)
            studio = await self._studio_for(db, session)
            if studio.partner_id != partner_id:
                return Result.failure(ErrorKind.ACCESS_DENIED, SESSION_NOT_FOUND)

            totals = await db.execute(
                select(func.count(Booking.id), func.coalesce(func.sum(Booking.amount_paid), 0))
                .where(Booking.session_id == session_id, Booking.status != BookingStatus.CANCELLED)
            )
            bookings, gross_credits = totals.one()
            partner = await db.get(User, partner_id)

        commission_bps = self.default_commission_bps
        if partner is not None and partner.commission_bps is not None:
            commission_bps = partner.commission_bps
        split = compute_payout_split(int(gross_credits) * self.unit_amount, commission_bps)
        return Result.success(SessionEarnings(
            session_id=session_id,
            bookings=int(bookings),
            gross_credits=int(gross_credits),
            commission_bps=commission_bps,
            split=split,
        ))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _booking_by_code(db: AsyncSession, code: str) -> Optional[Booking]:
        result = await db.execute(select(Booking).where(Booking.code == code.strip().upper()))
        return result.scalar_one_or_none()

    @staticmethod
    async def _studio_for(db: AsyncSession, session: ClassSession) -> Studio:
        studio_class = await db.get(StudioClass, session.class_id)
        return await db.get(Studio, studio_class.studio_id)

    @staticmethod
    def _minutes(delta: timedelta) -> int:
        return int(delta.total_seconds() // 60)
