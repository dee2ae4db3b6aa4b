"""
Admission gate for high-contention sessions.

The gate sits in front of the capacity tracker and only ever says "don't
bother": a rejected request is answered SESSION_FULL without opening a DB
transaction. An admitted request still has to win the seat in the database.

Circuit Breaker Pattern:
  On Redis failure, the gate "fails open" (admits all requests).
  This prevents Redis outages from blocking all bookings.

  Tradeoff: During a Redis outage every request reaches the capacity
  tracker, which still rejects overflow with SESSION_FULL.
"""

from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import redis_connection_errors, redis_circuit_breaker_open

logger = get_logger(__name__)


class AdmissionStrategy(ABC):
    """Pre-check consulted by the booking controller before reserving a seat."""

    @abstractmethod
    async def admit(self, session_id: int) -> bool:
        """False means the session is known to be full."""

    @abstractmethod
    async def release(self, session_id: int):
        """Give back the in-flight slot taken by `admit`."""

    @abstractmethod
    async def sync(self, session_id: int, available_seats: int):
        """Publish the remaining seat count from inside the reserving or releasing transaction."""


class OptimisticAdmission(AdmissionStrategy):
    """Admits everything; the locked seat increment is the only check."""

    async def admit(self, session_id: int) -> bool:
        return True

    async def release(self, session_id: int):
        return None

    async def sync(self, session_id: int, available_seats: int):
        return None

# KEYS[1] = seats:<session_id>     remaining seats, written by sync()
# KEYS[2] = inflight:<session_id>  admitted requests not yet released
# ARGV[1] = TTL for the in-flight counter (seconds)
ADMIT_SCRIPT = """
local seats = redis.call('GET', KEYS[1])
if not seats then
    return 1
end
local inflight = tonumber(redis.call('GET', KEYS[2]) or '0')
if inflight >= tonumber(seats) then
    return 0
end
redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[1])
return 1
"""

RELEASE_SCRIPT = """
local inflight = tonumber(redis.call('GET', KEYS[1]) or '0')
if inflight > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""

INFLIGHT_TTL_SECONDS = 30
# A seats value that is never refreshed expires, and the gate reopens
SEATS_TTL_SECONDS = 60


class RedisAdmission(AdmissionStrategy):
    """
    Redis-based admission control.

    Strategy: Fail fast at the Redis gate before opening a DB transaction
    when a session is already known to be full.

    Use when:
    - Hundreds of clients race for a popular session at release time
    - Need to protect database from lock queues on one session row
    """

    def __init__(self, client: Optional[redis.Redis]):
        self.redis = client
        self._admit = client.register_script(ADMIT_SCRIPT) if client is not None else None
        self._release = client.register_script(RELEASE_SCRIPT) if client is not None else None

    @staticmethod
    def _keys(session_id: int) -> tuple[str, str]:
        return f"seats:{session_id}", f"inflight:{session_id}"

    def _trip(self, operation: str, error: Exception) -> None:
        redis_connection_errors.inc()
        redis_circuit_breaker_open.set(1)
        logger.warning("admission_gate_degraded", operation=operation, error=str(error))

    async def admit(self, session_id: int) -> bool:
        """
        Returns:
            True if admitted (proceed to DB)
            False if the session is known to be full
        """
        if self._admit is None:
            return True
        seats_key, inflight_key = self._keys(session_id)
        try:
            result = await self._admit(keys=[seats_key, inflight_key], args=[INFLIGHT_TTL_SECONDS])
        except redis.RedisError as e:
            # Circuit breaker: On Redis failure, fail open (admit all)
            self._trip("admit", e)
            return True
        redis_circuit_breaker_open.set(0)
        return bool(result)

    async def release(self, session_id: int):
        if self._release is None:
            return
        _, inflight_key = self._keys(session_id)
        try:
            await self._release(keys=[inflight_key])
        except redis.RedisError as e:
            self._trip("release", e)

    async def sync(self, session_id: int, available_seats: int):
        """Write the remaining seat count; callers hold the session row lock."""
        if self.redis is None:
            return
        seats_key, _ = self._keys(session_id)
        try:
            await self.redis.set(seats_key, max(available_seats, 0), ex=SEATS_TTL_SECONDS)
        except redis.RedisError as e:
            self._trip("sync", e)
