"""
Ledger store: the transactional boundary shared by bookings and payments.

Every multi-step mutation (capacity counter + booking row, purchase status +
credit balance + notification) runs inside exactly one `transaction()` block.
The block commits on normal exit and rolls back on any exception, so a caller
timing out or failing halfway never leaves a partial write behind.

Connectivity faults are translated into StorageUnavailableError here, so no
raw driver exception escapes to the service boundary.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import storage_errors
from studio_booking.domain.errors import StorageUnavailableError

logger = get_logger(__name__)

# Errors that mean "the store could not answer", as opposed to constraint
# violations, which callers handle as conflicts.
TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    sa_exc.DisconnectionError,
    ConnectionError,
    OSError,
)


class LedgerStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Open a session and a transaction; commit on success, roll back on error."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except TRANSIENT_ERRORS as exc:
            storage_errors.inc()
            logger.error(
                "ledger_transaction_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise StorageUnavailableError("Ledger store unavailable") from exc
