"""
Pytest fixtures for test database, services, client, and authentication.

Each test gets its own SQLite file database (aiosqlite). Transactions open
with BEGIN IMMEDIATE, so concurrent writers in a test serialize the same
way row locks serialize them on PostgreSQL.

Time is injected: services read a FixedClock, never the wall clock.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select

from studio_booking.api.deps import get_clock, get_dispatcher, get_payment_processor
from studio_booking.core.security import create_access_token
from studio_booking.db.base import Base
from studio_booking.db.ledger import LedgerStore
from studio_booking.db.session import build_engine, build_session_factory, get_ledger
from studio_booking.domain.errors import InvalidSignatureError, PaymentProcessorError
from studio_booking.main import app
from studio_booking.models import ClassSession, Purchase, PurchaseStatus, Studio, StudioClass, User, UserRole
from studio_booking.services.booking_service import BookingAdmissionController
from studio_booking.services.admission_service import OptimisticAdmission
from studio_booking.services.notifications import NotificationDispatcher, NotificationMessage
from studio_booking.services.payment_journal import PaymentEventJournal
from studio_booking.services.payment_processor import (
    CheckoutSession,
    CheckoutStatus,
    PaymentProcessor,
    ProcessorEvent,
)
from studio_booking.services.payment_service import PaymentReconciliationEngine
from studio_booking.services.strategy_factory import get_admission

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
VALID_SIGNATURE = "t=1,v1=valid"


class FixedClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, fail: bool = False):
        self.messages: list[NotificationMessage] = []
        self.fail = fail

    async def dispatch(self, message: NotificationMessage) -> None:
        if self.fail:
            raise RuntimeError("push gateway down")
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m.type for m in self.messages]


@dataclass
class FakeProcessor(PaymentProcessor):
    """In-memory processor; tests set statuses and failure switches directly."""

    created: list[dict] = field(default_factory=list)
    statuses: dict[str, CheckoutStatus] = field(default_factory=dict)
    refunds: list[tuple[str, Optional[int]]] = field(default_factory=list)
    fail_checkout: bool = False
    fail_refund: bool = False

    async def create_checkout_session(self, *, user_id, credits, amount, currency,
                                      customer_email=None, package_id=None) -> CheckoutSession:
        if self.fail_checkout:
            raise PaymentProcessorError("processor unreachable")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({
            "id": session_id, "user_id": user_id, "credits": credits,
            "amount": amount, "currency": currency, "package_id": package_id,
        })
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutStatus:
        if session_id not in self.statuses:
            return CheckoutStatus(id=session_id, payment_status="unpaid", status="open")
        return self.statuses[session_id]

    async def refund(self, payment_intent_id: str, amount: Optional[int] = None) -> str:
        if self.fail_refund:
            raise PaymentProcessorError("refund rejected")
        self.refunds.append((payment_intent_id, amount))
        return f"re_test_{len(self.refunds)}"

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if signature != VALID_SIGNATURE:
            raise InvalidSignatureError("Invalid webhook signature")
        body = json.loads(payload)
        return ProcessorEvent(id=body["id"], type=body["type"], data=body["data"]["object"])


def completed_event(event_id: str, checkout_session_id: str, amount_total: int = 1000,
                    payment_status: str = "paid", payment_intent: str = "pi_test_1") -> ProcessorEvent:
    return ProcessorEvent(
        id=event_id,
        type="checkout.session.completed",
        data={
            "id": checkout_session_id,
            "payment_status": payment_status,
            "amount_total": amount_total,
            "payment_intent": payment_intent,
        },
    )


# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create tables in a fresh database file, then dispose."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def ledger(engine) -> LedgerStore:
    return LedgerStore(build_session_factory(engine))


# ----------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def controller(ledger, dispatcher, clock) -> BookingAdmissionController:
    return BookingAdmissionController(ledger, dispatcher, OptimisticAdmission(), clock=clock)


@pytest.fixture
def journal(ledger, clock) -> PaymentEventJournal:
    return PaymentEventJournal(ledger, clock=clock)


@pytest.fixture
def payments(ledger, processor, dispatcher, journal, clock) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(ledger, processor, dispatcher, journal=journal, clock=clock)


# ----------------------------------------------------------------------
# Seed data
# ----------------------------------------------------------------------

class Seeder:
    """Writes catalogue rows (users, studios, classes, sessions) directly."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger
        self._emails = 0

    async def user(self, role: UserRole = UserRole.CLIENT, verified: bool = True,
                   balance: int = 0, commission_bps: Optional[int] = None) -> User:
        self._emails += 1
        user = User(
            email=f"user{self._emails}@example.com",
            full_name=f"User {self._emails}",
            role=role,
            is_verified=verified,
            credit_balance=balance,
            commission_bps=commission_bps,
        )
        async with self.ledger.transaction() as db:
            db.add(user)
        return user

    async def session(self, partner: Optional[User] = None, capacity: int = 10, price: int = 5,
                      starts_in: timedelta = timedelta(days=1), duration: timedelta = timedelta(hours=1),
                      title: str = "Morning Flow") -> ClassSession:
        if partner is None:
            partner = await self.user(role=UserRole.PARTNER)
        async with self.ledger.transaction() as db:
            studio = Studio(name="Lotus Studio", partner_id=partner.id)
            db.add(studio)
            await db.flush()
            studio_class = StudioClass(studio_id=studio.id, title=title, max_capacity=capacity, base_price=price)
            db.add(studio_class)
            await db.flush()
            session = ClassSession(
                class_id=studio_class.id,
                start_time=NOW + starts_in,
                end_time=NOW + starts_in + duration,
            )
            db.add(session)
        return session

    async def purchase(self, user: User, credits: int = 10, amount: int = 1000,
                       status: PurchaseStatus = PurchaseStatus.PENDING,
                       checkout_session_id: Optional[str] = None,
                       payment_intent_id: Optional[str] = None) -> Purchase:
        async with self.ledger.transaction() as db:
            purchase = Purchase(
                user_id=user.id,
                credits=credits,
                amount=amount,
                checkout_session_id=checkout_session_id or f"cs_seed_{user.id}_{credits}_{status}",
                payment_intent_id=payment_intent_id,
                status=status,
                meta={},
            )
            db.add(purchase)
        return purchase

    async def reload(self, model, pk):
        async with self.ledger.transaction() as db:
            return await db.get(model, pk)

    async def all(self, model, *where):
        async with self.ledger.transaction() as db:
            result = await db.execute(select(model).where(*where))
            return list(result.scalars().all())


@pytest.fixture
def seed(ledger) -> Seeder:
    return Seeder(ledger)


# ----------------------------------------------------------------------
# HTTP
# ----------------------------------------------------------------------

@pytest_asyncio.fixture(scope="function")
async def client(ledger, clock, dispatcher, processor) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the ledger, clock and collaborators overridden."""
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_admission] = OptimisticAdmission

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    """Authorization headers with a Bearer token for the given user."""
    token = create_access_token(data={"sub": str(user.id), "role": str(user.role)})
    return {"Authorization": f"Bearer {token}"}
