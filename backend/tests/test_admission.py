"""
Tests for the admission gate strategies.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from studio_booking.services.admission_service import SEATS_TTL_SECONDS, OptimisticAdmission, RedisAdmission
from studio_booking.services.strategy_factory import build_admission_strategy


def redis_with_scripts(admit_result=1):
    client = MagicMock()
    admit_script = AsyncMock(return_value=admit_result)
    release_script = AsyncMock(return_value=0)
    client.register_script.side_effect = [admit_script, release_script]
    client.set = AsyncMock()
    return client, admit_script, release_script


@pytest.mark.asyncio
async def test_optimistic_always_admits():
    gate = OptimisticAdmission()
    assert await gate.admit(1) is True
    await gate.release(1)
    await gate.sync(1, 0)


@pytest.mark.asyncio
async def test_redis_gate_admits_and_rejects():
    client, admit_script, _ = redis_with_scripts(admit_result=0)
    gate = RedisAdmission(client)

    assert await gate.admit(7) is False
    admit_script.assert_awaited_once_with(keys=["seats:7", "inflight:7"], args=[30])


@pytest.mark.asyncio
async def test_redis_gate_fails_open():
    client, admit_script, _ = redis_with_scripts()
    admit_script.side_effect = redis.ConnectionError("connection refused")
    gate = RedisAdmission(client)

    assert await gate.admit(7) is True


@pytest.mark.asyncio
async def test_redis_gate_release_and_sync():
    client, _, release_script = redis_with_scripts()
    gate = RedisAdmission(client)

    await gate.release(3)
    await gate.sync(3, -2)

    release_script.assert_awaited_once_with(keys=["inflight:3"])
    client.set.assert_awaited_once_with("seats:3", 0, ex=SEATS_TTL_SECONDS)


@pytest.mark.asyncio
async def test_redis_gate_sync_failure_is_swallowed():
    client, _, _ = redis_with_scripts()
    client.set.side_effect = redis.TimeoutError("timed out")
    gate = RedisAdmission(client)

    await gate.sync(3, 4)


def test_redis_strategy_falls_back_when_disabled():
    """REDIS_ENABLED defaults to False."""
    assert isinstance(build_admission_strategy("redis"), OptimisticAdmission)
    assert isinstance(build_admission_strategy("optimistic"), OptimisticAdmission)
