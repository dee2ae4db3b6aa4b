"""
Capacity tracker: atomic reserve-if-available for class sessions.

CONCURRENCY STRATEGY: Row Lock + Conditional Increment
======================================================

Problem:
  Counting a session's bookings and then inserting a new one is a
  check-then-act race. Two clients read booked=9 of 10, both insert,
  the session ends up with 11.

Solution:
  Every reservation runs inside one ledger transaction:

  1. SELECT ... FOR UPDATE on the session row. Concurrent reservations for
     the same session queue here; other sessions are unaffected.
  2. Duplicate and bookability checks against the locked state.
  3. UPDATE class_sessions SET booked_count = booked_count + 1
     WHERE id = :id AND booked_count < :capacity
     If rows_affected == 0 the session is full.
  4. INSERT the booking row.

  The conditional UPDATE is the guard of record: even without the lock it
  can never push the counter past capacity. The lock additionally makes the
  duplicate check and the booking insert race-free for a given session.

  On SQLite (tests) FOR UPDATE is a no-op; the engine opens every
  transaction with BEGIN IMMEDIATE, which serializes writers instead.

Release:
  Releasing is driven by the booking's own transition out of CONFIRMED
  (a conditional UPDATE). Only the caller whose transition succeeded
  decrements the counter, so a double release is a no-op.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.models.booking import Booking, BookingStatus, SEAT_HOLDING_STATUSES
from studio_booking.models.studio import ClassSession, SessionStatus, Studio, StudioClass

logger = get_logger(__name__)

BOOKING_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
BOOKING_CODE_LENGTH = 10
BOOKING_CODE_ATTEMPTS = 3

# PostgreSQL reports the index name, SQLite the indexed columns
LIVE_BOOKING_MARKERS = ("uq_live_booking_per_user_session", "bookings.user_id, bookings.session_id")


def generate_booking_code() -> str:
    return "".join(secrets.choice(BOOKING_CODE_ALPHABET) for _ in range(BOOKING_CODE_LENGTH))


def is_live_booking_conflict(error: IntegrityError) -> bool:
    """True when the one-live-booking-per-user index rejected the insert."""
    message = str(error.orig)
    return any(marker in message for marker in LIVE_BOOKING_MARKERS)


@dataclass(frozen=True)
class Reserved:
    booking: Booking
    session: ClassSession
    studio_class: StudioClass
    remaining: int


@dataclass(frozen=True)
class SessionFull:
    capacity: int


@dataclass(frozen=True)
class SessionNotBookable:
    reason: str


@dataclass(frozen=True)
class SessionMissing:
    session_id: int


@dataclass(frozen=True)
class AlreadyBooked:
    booking_id: Optional[int]


ReserveOutcome = Union[Reserved, SessionFull, SessionNotBookable, SessionMissing, AlreadyBooked]


def unbookable_reason(
    session: ClassSession,
    studio_class: StudioClass,
    studio: Optional[Studio],
    now: datetime,
) -> Optional[str]:
    if session.status != SessionStatus.SCHEDULED:
        return f"Session is {session.status.lower()}"
    if session.start_time <= now:
        return "Session has already started"
    if not studio_class.is_active or studio is None or not studio.is_active:
        return "Class is not available for booking"
    return None


class CapacityTracker:
    """Reserve and release seats; every method runs in the caller's transaction."""

    async def lock_session(self, db: AsyncSession, session_id: int) -> Optional[ClassSession]:
        result = await db.execute(
            select(ClassSession).where(ClassSession.id == session_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def try_reserve(
        self,
        db: AsyncSession,
        *,
        session_id: int,
        user_id: int,
        now: datetime,
    ) -> ReserveOutcome:
        session = await self.lock_session(db, session_id)
        if session is None:
            return SessionMissing(session_id=session_id)

        studio_class = await db.get(StudioClass, session.class_id)
        studio = await db.get(Studio, studio_class.studio_id)

        existing = await db.execute(
            select(Booking.id)
            .where(
                Booking.user_id == user_id,
                Booking.session_id == session_id,
                Booking.status.in_(SEAT_HOLDING_STATUSES),
            )
            .limit(1)
        )
        existing_id = existing.scalar_one_or_none()
        if existing_id is not None:
            return AlreadyBooked(booking_id=existing_id)

        reason = unbookable_reason(session, studio_class, studio, now)
        if reason:
            return SessionNotBookable(reason=reason)

        capacity = studio_class.max_capacity
        claimed = await db.execute(
            update(ClassSession)
            .where(
                ClassSession.id == session_id,
                ClassSession.booked_count < capacity,
            )
            .values(booked_count=ClassSession.booked_count + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.info("reservation_rejected_full", session_id=session_id, capacity=capacity)
            return SessionFull(capacity=capacity)

        booking = Booking(
            code=generate_booking_code(),
            user_id=user_id,
            session_id=session_id,
            status=BookingStatus.CONFIRMED,
            amount_paid=studio_class.base_price,
        )
        db.add(booking)
        await db.flush()
        await db.refresh(session)

        return Reserved(
            booking=booking,
            session=session,
            studio_class=studio_class,
            remaining=capacity - session.booked_count,
        )

    async def release(self, db: AsyncSession, booking: Booking, to_status: BookingStatus) -> bool:
        """Move a CONFIRMED booking to a seat-freeing status and give the seat back.

        Returns False (and changes nothing) if the booking already left CONFIRMED.
        """
        transitioned = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.CONFIRMED)
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        if transitioned.rowcount != 1:
            return False

        await self._decrement(db, booking.session_id, 1)
        await db.refresh(booking)
        return True

    async def release_unattended(self, db: AsyncSession, session_id: int) -> int:
        """Bulk CONFIRMED-without-check-in -> NO_SHOW; returns how many moved."""
        transitioned = await db.execute(
            update(Booking)
            .where(
                Booking.session_id == session_id,
                Booking.status == BookingStatus.CONFIRMED,
                Booking.checked_in_at.is_(None),
            )
            .values(status=BookingStatus.NO_SHOW)
            .execution_options(synchronize_session=False)
        )
        count = transitioned.rowcount or 0
        if count:
            await self._decrement(db, session_id, count)
        return count

    async def _decrement(self, db: AsyncSession, session_id: int, count: int) -> None:
        result = await db.execute(
            update(ClassSession)
            .where(ClassSession.id == session_id, ClassSession.booked_count >= count)
            .values(booked_count=ClassSession.booked_count - count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Counter drifted below the number of live bookings; never go negative
            logger.error("booked_count_underflow", session_id=session_id, released=count)
            await db.execute(
                update(ClassSession)
                .where(ClassSession.id == session_id)
                .values(booked_count=0)
                .execution_options(synchronize_session=False)
            )
