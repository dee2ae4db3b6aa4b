"""
Payment event journal.

Records each processor notification by event id before it is applied, so a
redelivered event is recognised and skipped. First-write-wins is decided by
the unique constraint on payment_events.event_id (INSERT ... ON CONFLICT DO
NOTHING), never by a read-then-insert.

An event that was claimed but never marked processed is not a duplicate:
inside its lease it is IN_FLIGHT and the delivery must be answered with a
retryable status, so the processor keeps retrying. Once the claim is older
than PAYMENT_EVENT_CLAIM_SECONDS the next delivery RECLAIMS it.
"""

from datetime import timedelta
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.db.base import utcnow
from studio_booking.db.ledger import LedgerStore
from studio_booking.models.payment_event import PaymentEvent

logger = get_logger(__name__)


class RecordOutcome(StrEnum):
    INSERTED = "inserted"
    RECLAIMED = "reclaimed"
    IN_FLIGHT = "in_flight"
    ALREADY_SEEN = "already_seen"

    @property
    def should_process(self) -> bool:
        return self in (RecordOutcome.INSERTED, RecordOutcome.RECLAIMED)


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"payment journal needs ON CONFLICT support; {dialect!r} is not supported")


class PaymentEventJournal:
    def __init__(self, ledger: LedgerStore, clock=utcnow):
        self._ledger = ledger
        self._clock = clock
        self.claim_lease = timedelta(seconds=get_settings().PAYMENT_EVENT_CLAIM_SECONDS)

    async def record_if_new(
        self,
        event_id: str,
        event_type: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> RecordOutcome:
        now = self._clock()
        async with self._ledger.transaction() as db:
            insert = _insert_for(db)
            inserted = await db.execute(
                insert(PaymentEvent)
                .values(
                    event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    processed=False,
                    attempts=1,
                    received_at=now,
                    claimed_at=now,
                )
                .on_conflict_do_nothing(index_elements=["event_id"])
            )
            if inserted.rowcount == 1:
                return RecordOutcome.INSERTED

            reclaimed = await db.execute(
                update(PaymentEvent)
                .where(
                    PaymentEvent.event_id == event_id,
                    PaymentEvent.processed.is_(False),
                    PaymentEvent.claimed_at < now - self.claim_lease,
                )
                .values(attempts=PaymentEvent.attempts + 1, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if reclaimed.rowcount == 1:
                logger.warning("payment_event_reclaimed", event_id=event_id, event_type=event_type)
                return RecordOutcome.RECLAIMED

            processed = await db.scalar(select(PaymentEvent.processed).where(PaymentEvent.event_id == event_id))
            if not processed:
                logger.info("payment_event_in_flight", event_id=event_id, event_type=event_type)
                return RecordOutcome.IN_FLIGHT

        logger.info("payment_event_duplicate", event_id=event_id, event_type=event_type)
        return RecordOutcome.ALREADY_SEEN

    async def mark_processed(self, event_id: str, error: Optional[str] = None) -> None:
        async with self._ledger.transaction() as db:
            await db.execute(
                update(PaymentEvent)
                .where(PaymentEvent.event_id == event_id)
                .values(processed=True, processed_at=self._clock(), last_error=error)
                .execution_options(synchronize_session=False)
            )
