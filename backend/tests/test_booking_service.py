"""
Tests for the booking admission controller, including concurrency scenarios.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import RecordingDispatcher
from studio_booking.domain.errors import ErrorKind
from studio_booking.models import Booking, BookingStatus, ClassSession, Notification, SessionStatus, UserRole
from studio_booking.services.booking_service import BookingAdmissionController
from studio_booking.services.admission_service import AdmissionStrategy, OptimisticAdmission


class ClosedGate(AdmissionStrategy):
    async def admit(self, session_id: int) -> bool:
        return False

    async def release(self, session_id: int):
        pass

    async def sync(self, session_id: int, available_seats: int):
        pass


class SeatGate(AdmissionStrategy):
    """In-memory gate following the Redis scripts: no seats key means admit."""

    def __init__(self, dispatcher: RecordingDispatcher):
        self.seats: dict[int, int] = {}
        self.inflight: dict[int, int] = {}
        self.writes: list[tuple[int, int, int]] = []
        self._dispatcher = dispatcher

    async def admit(self, session_id: int) -> bool:
        if session_id not in self.seats:
            return True
        if self.inflight.get(session_id, 0) >= self.seats[session_id]:
            return False
        self.inflight[session_id] = self.inflight.get(session_id, 0) + 1
        return True

    async def release(self, session_id: int):
        if self.inflight.get(session_id, 0) > 0:
            self.inflight[session_id] -= 1

    async def sync(self, session_id: int, available_seats: int):
        self.seats[session_id] = max(available_seats, 0)
        # Messages are delivered after commit, so this counts commits already done
        self.writes.append((session_id, available_seats, len(self._dispatcher.messages)))


@pytest.mark.asyncio
async def test_create_booking(controller, seed, dispatcher):
    """Successful booking takes a seat and snapshots the class price."""
    user = await seed.user()
    session = await seed.session(capacity=10, price=7)

    result = await controller.create_booking(user.id, session.id)

    assert result.ok
    booking = result.value
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.amount_paid == 7
    assert len(booking.code) == 10
    assert set(booking.code) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789")
    refreshed = await seed.reload(ClassSession, session.id)
    assert refreshed.booked_count == 1
    assert dispatcher.types() == ["BOOKING_CONFIRMED"]


@pytest.mark.asyncio
async def test_concurrent_bookings_never_exceed_capacity(controller, seed):
    """10 clients race for 3 seats: exactly 3 succeed, 7 get SESSION_FULL."""
    session = await seed.session(capacity=3)
    users = [await seed.user() for _ in range(10)]

    results = await asyncio.gather(*(controller.create_booking(u.id, session.id) for u in users))

    succeeded = [r for r in results if r.ok]
    rejected = [r for r in results if not r.ok]
    assert len(succeeded) == 3
    assert len(rejected) == 7
    assert all(r.error.kind == ErrorKind.SESSION_FULL for r in rejected)

    refreshed = await seed.reload(ClassSession, session.id)
    assert refreshed.booked_count == 3
    live = await seed.all(Booking, Booking.session_id == session.id, Booking.status == BookingStatus.CONFIRMED)
    assert len(live) == 3


@pytest.mark.asyncio
async def test_concurrent_duplicate_requests_book_once(controller, seed):
    """The same user racing themselves gets one booking."""
    user = await seed.user()
    session = await seed.session(capacity=10)

    results = await asyncio.gather(*(controller.create_booking(user.id, session.id) for _ in range(5)))

    assert sum(1 for r in results if r.ok) == 1
    assert all(r.error.kind == ErrorKind.DUPLICATE_BOOKING for r in results if not r.ok)
    refreshed = await seed.reload(ClassSession, session.id)
    assert refreshed.booked_count == 1


@pytest.mark.asyncio
async def test_duplicate_booking(controller, seed):
    user = await seed.user()
    session = await seed.session()

    first = await controller.create_booking(user.id, session.id)
    second = await controller.create_booking(user.id, session.id)

    assert first.ok
    assert second.error.kind == ErrorKind.DUPLICATE_BOOKING


@pytest.mark.asyncio
async def test_rebook_after_cancel(controller, seed):
    """A cancelled booking is history; the user may book again."""
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(days=2))

    first = await controller.create_booking(user.id, session.id)
    assert (await controller.cancel_booking(first.value.id, user.id)).ok

    again = await controller.create_booking(user.id, session.id)
    assert again.ok
    assert again.value.id != first.value.id


@pytest.mark.asyncio
async def test_full_session(controller, seed):
    session = await seed.session(capacity=1)
    first, second = await seed.user(), await seed.user()

    assert (await controller.create_booking(first.id, session.id)).ok
    result = await controller.create_booking(second.id, session.id)

    assert result.error.kind == ErrorKind.SESSION_FULL


@pytest.mark.asyncio
async def test_missing_session(controller, seed):
    user = await seed.user()
    result = await controller.create_booking(user.id, 99999)
    assert result.error.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_session_in_the_past_is_not_bookable(controller, seed):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(minutes=-5))

    result = await controller.create_booking(user.id, session.id)

    assert result.error.kind == ErrorKind.SESSION_NOT_BOOKABLE


@pytest.mark.asyncio
async def test_cancelled_session_is_not_bookable(controller, seed, ledger):
    user = await seed.user()
    session = await seed.session()
    async with ledger.transaction() as db:
        row = await db.get(ClassSession, session.id)
        row.status = SessionStatus.CANCELLED

    result = await controller.create_booking(user.id, session.id)

    assert result.error.kind == ErrorKind.SESSION_NOT_BOOKABLE


@pytest.mark.asyncio
async def test_closed_admission_gate_rejects_without_touching_the_ledger(ledger, dispatcher, clock, seed):
    controller = BookingAdmissionController(ledger, dispatcher, ClosedGate(), clock=clock)
    user = await seed.user()
    session = await seed.session()

    result = await controller.create_booking(user.id, session.id)

    assert result.error.kind == ErrorKind.SESSION_FULL
    assert await seed.all(Booking) == []


@pytest.mark.asyncio
async def test_dispatcher_failure_does_not_fail_booking(ledger, clock, seed):
    controller = BookingAdmissionController(ledger, RecordingDispatcher(fail=True), OptimisticAdmission(), clock=clock)
    user = await seed.user()
    session = await seed.session()

    result = await controller.create_booking(user.id, session.id)

    assert result.ok
    # The outbox row is committed even though push delivery failed
    assert len(await seed.all(Notification)) == 1


@pytest.mark.asyncio
async def test_gate_is_written_before_commit(ledger, dispatcher, clock, seed):
    gate = SeatGate(dispatcher)
    controller = BookingAdmissionController(ledger, dispatcher, gate, clock=clock)
    user = await seed.user()
    session = await seed.session(capacity=2)

    booking = (await controller.create_booking(user.id, session.id)).value
    await controller.cancel_booking(booking.id, user.id)

    assert gate.writes == [(session.id, 1, 0), (session.id, 2, 1)]
    assert gate.seats == {session.id: 2}


@pytest.mark.asyncio
async def test_rejected_reservation_leaves_gate_to_committed_writes(ledger, dispatcher, clock, seed):
    """A request the ledger turned away must not publish a seat count of its own."""
    gate = SeatGate(dispatcher)
    controller = BookingAdmissionController(ledger, dispatcher, gate, clock=clock)
    session = await seed.session(capacity=1)
    first, second, third = await seed.user(), await seed.user(), await seed.user()

    booking = (await controller.create_booking(first.id, session.id)).value
    gate.seats.clear()  # seats key expired; the next request reaches the ledger
    rejected = await controller.create_booking(second.id, session.id)

    assert rejected.error.kind == ErrorKind.SESSION_FULL
    assert gate.seats == {}

    await controller.cancel_booking(booking.id, first.id)
    result = await controller.create_booking(third.id, session.id)

    assert result.ok
    assert gate.seats == {session.id: 0}


@pytest.mark.asyncio
async def test_booking_code_collision_retries_with_new_code(controller, seed, monkeypatch):
    codes = iter(["AAAAAAAAAA", "AAAAAAAAAA", "BBBBBBBBBB"])
    monkeypatch.setattr("studio_booking.services.capacity_tracker.generate_booking_code", lambda: next(codes))
    session = await seed.session()
    first, second = await seed.user(), await seed.user()

    assert (await controller.create_booking(first.id, session.id)).value.code == "AAAAAAAAAA"
    result = await controller.create_booking(second.id, session.id)

    assert result.ok
    assert result.value.code == "BBBBBBBBBB"
    assert (await seed.reload(ClassSession, session.id)).booked_count == 2


@pytest.mark.asyncio
async def test_booking_code_collisions_are_not_reported_as_duplicates(controller, seed, monkeypatch):
    monkeypatch.setattr("studio_booking.services.capacity_tracker.generate_booking_code", lambda: "AAAAAAAAAA")
    session = await seed.session()
    first, second = await seed.user(), await seed.user()
    await controller.create_booking(first.id, session.id)

    with pytest.raises(IntegrityError):
        await controller.create_booking(second.id, session.id)

    assert (await seed.reload(ClassSession, session.id)).booked_count == 1


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_releases_seat(controller, seed, dispatcher):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(hours=3))
    booking = (await controller.create_booking(user.id, session.id)).value

    result = await controller.cancel_booking(booking.id, user.id)

    assert result.ok
    assert result.value.status == BookingStatus.CANCELLED
    refreshed = await seed.reload(ClassSession, session.id)
    assert refreshed.booked_count == 0
    assert dispatcher.types() == ["BOOKING_CONFIRMED", "BOOKING_CANCELLED"]


@pytest.mark.asyncio
async def test_cancel_inside_cutoff_is_rejected(controller, seed):
    """One hour before start is inside the two hour cutoff."""
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(hours=1))
    booking = (await controller.create_booking(user.id, session.id)).value

    result = await controller.cancel_booking(booking.id, user.id)

    assert result.error.kind == ErrorKind.TOO_LATE_TO_CANCEL
    assert (await seed.reload(Booking, booking.id)).status == BookingStatus.CONFIRMED
    assert (await seed.reload(ClassSession, session.id)).booked_count == 1


@pytest.mark.asyncio
async def test_cancel_exactly_at_cutoff_is_allowed(controller, seed):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(hours=2))
    booking = (await controller.create_booking(user.id, session.id)).value

    assert (await controller.cancel_booking(booking.id, user.id)).ok


@pytest.mark.asyncio
async def test_cancel_twice(controller, seed):
    user = await seed.user()
    session = await seed.session()
    booking = (await controller.create_booking(user.id, session.id)).value

    assert (await controller.cancel_booking(booking.id, user.id)).ok
    second = await controller.cancel_booking(booking.id, user.id)

    assert second.error.kind == ErrorKind.NOT_CONFIRMED
    assert (await seed.reload(ClassSession, session.id)).booked_count == 0


@pytest.mark.asyncio
async def test_cancel_someone_elses_booking(controller, seed):
    owner, other = await seed.user(), await seed.user()
    session = await seed.session()
    booking = (await controller.create_booking(owner.id, session.id)).value

    result = await controller.cancel_booking(booking.id, other.id)

    assert result.error.kind == ErrorKind.ACCESS_DENIED
    assert (await seed.reload(Booking, booking.id)).status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_concurrent_cancels_release_once(controller, seed):
    user = await seed.user()
    session = await seed.session()
    booking = (await controller.create_booking(user.id, session.id)).value

    results = await asyncio.gather(*(controller.cancel_booking(booking.id, user.id) for _ in range(4)))

    assert sum(1 for r in results if r.ok) == 1
    assert (await seed.reload(ClassSession, session.id)).booked_count == 0


# ----------------------------------------------------------------------
# Check-in
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_check_in_before_window_opens(controller, seed):
    """31 minutes before start is outside the window."""
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(minutes=31))
    booking = (await controller.create_booking(user.id, session.id)).value

    result = await controller.check_in(booking.id, user.id)

    assert result.error.kind == ErrorKind.OUTSIDE_CHECK_IN_WINDOW


@pytest.mark.asyncio
async def test_check_in_window_edges_are_inclusive(controller, seed, clock):
    early_user, late_user = await seed.user(), await seed.user()
    session = await seed.session(starts_in=timedelta(minutes=30))
    early = (await controller.create_booking(early_user.id, session.id)).value
    late = (await controller.create_booking(late_user.id, session.id)).value

    assert (await controller.check_in(early.id, early_user.id)).ok

    clock.advance(minutes=45)  # start + 15 minutes
    assert (await controller.check_in(late.id, late_user.id)).ok


@pytest.mark.asyncio
async def test_check_in_after_window_closes(controller, seed, clock):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(minutes=10))
    booking = (await controller.create_booking(user.id, session.id)).value

    clock.advance(minutes=26)  # start + 16 minutes
    result = await controller.check_in(booking.id, user.id)

    assert result.error.kind == ErrorKind.OUTSIDE_CHECK_IN_WINDOW


@pytest.mark.asyncio
async def test_check_in_at_start(controller, seed, clock):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(hours=1))
    booking = (await controller.create_booking(user.id, session.id)).value

    clock.advance(hours=1)
    result = await controller.check_in(booking.id, user.id)

    assert result.ok
    assert result.value.status == BookingStatus.COMPLETED
    assert result.value.checked_in_at == clock.now
    # Completed bookings keep their seat
    assert (await seed.reload(ClassSession, session.id)).booked_count == 1

    again = await controller.check_in(booking.id, user.id)
    assert again.error.kind == ErrorKind.ALREADY_CHECKED_IN


@pytest.mark.asyncio
async def test_check_in_cancelled_booking(controller, seed, clock):
    user = await seed.user()
    session = await seed.session(starts_in=timedelta(hours=3))
    booking = (await controller.create_booking(user.id, session.id)).value
    await controller.cancel_booking(booking.id, user.id)

    clock.advance(hours=3)
    result = await controller.check_in(booking.id, user.id)

    assert result.error.kind == ErrorKind.NOT_CONFIRMED


@pytest.mark.asyncio
async def test_partner_check_in_by_code(controller, seed, clock):
    partner = await seed.user(role=UserRole.PARTNER)
    other_partner = await seed.user(role=UserRole.PARTNER)
    user = await seed.user()
    session = await seed.session(partner=partner, starts_in=timedelta(minutes=20))
    booking = (await controller.create_booking(user.id, session.id)).value

    denied = await controller.check_in_by_code(booking.code, other_partner.id)
    assert denied.error.kind == ErrorKind.ACCESS_DENIED

    result = await controller.check_in_by_code(booking.code.lower(), partner.id)
    assert result.ok
    assert result.value.status == BookingStatus.COMPLETED


# ----------------------------------------------------------------------
# No-shows
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mark_no_show_is_idempotent(controller, seed, clock):
    partner = await seed.user(role=UserRole.PARTNER)
    attended, absent = await seed.user(), await seed.user()
    session = await seed.session(partner=partner, starts_in=timedelta(hours=1), duration=timedelta(hours=1))
    kept = (await controller.create_booking(attended.id, session.id)).value
    missed = (await controller.create_booking(absent.id, session.id)).value

    clock.advance(hours=1)
    assert (await controller.check_in(kept.id, attended.id)).ok

    clock.advance(hours=1, minutes=1)
    first = await controller.mark_no_show(session.id, partner.id)
    second = await controller.mark_no_show(session.id, partner.id)

    assert first.value == 1
    assert second.value == 0
    assert (await seed.reload(Booking, missed.id)).status == BookingStatus.NO_SHOW
    assert (await seed.reload(Booking, kept.id)).status == BookingStatus.COMPLETED
    assert (await seed.reload(ClassSession, session.id)).booked_count == 1


@pytest.mark.asyncio
async def test_mark_no_show_before_session_ends(controller, seed, clock):
    partner = await seed.user(role=UserRole.PARTNER)
    session = await seed.session(partner=partner, starts_in=timedelta(hours=1))

    clock.advance(hours=1, minutes=30)
    result = await controller.mark_no_show(session.id, partner.id)

    assert result.error.kind == ErrorKind.SESSION_NOT_ENDED


@pytest.mark.asyncio
async def test_mark_no_show_requires_studio_owner(controller, seed, clock):
    owner = await seed.user(role=UserRole.PARTNER)
    intruder = await seed.user(role=UserRole.PARTNER)
    user = await seed.user()
    session = await seed.session(partner=owner, starts_in=timedelta(hours=1))
    booking = (await controller.create_booking(user.id, session.id)).value

    clock.advance(hours=3)
    result = await controller.mark_no_show(session.id, intruder.id)

    assert result.error.kind == ErrorKind.ACCESS_DENIED
    assert (await seed.reload(Booking, booking.id)).status == BookingStatus.CONFIRMED


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_user_bookings_most_recent_first(controller, seed):
    user = await seed.user()
    first = await seed.session(title="Yoga")
    second = await seed.session(title="Pilates")
    a = (await controller.create_booking(user.id, first.id)).value
    b = (await controller.create_booking(user.id, second.id)).value

    bookings = await controller.list_user_bookings(user.id)

    assert [x.id for x in bookings] == [b.id, a.id]


@pytest.mark.asyncio
async def test_get_booking_hides_other_users_bookings(controller, seed):
    owner, other = await seed.user(), await seed.user()
    session = await seed.session()
    booking = (await controller.create_booking(owner.id, session.id)).value

    assert (await controller.get_booking(booking.id, owner.id)).ok
    assert (await controller.get_booking(booking.id, other.id)).error.kind == ErrorKind.ACCESS_DENIED
    assert (await controller.get_booking(99999, owner.id)).error.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_session_earnings_split(controller, seed):
    partner = await seed.user(role=UserRole.PARTNER, commission_bps=2000)
    session = await seed.session(partner=partner, price=10)
    for _ in range(3):
        user = await seed.user()
        assert (await controller.create_booking(user.id, session.id)).ok

    result = await controller.session_earnings(session.id, partner.id)

    earnings = result.value
    assert earnings.bookings == 3
    assert earnings.gross_credits == 30
    assert earnings.commission_bps == 2000
    assert earnings.split.gross == 3000
    assert earnings.split.commission == 600
    assert earnings.split.partner_payout == 2400
