"""
Admission strategy factory.
Configures which admission control strategy guards the booking path.
"""

from functools import lru_cache

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.infrastructure.redis_client import get_redis
from studio_booking.services.admission_service import AdmissionStrategy, OptimisticAdmission, RedisAdmission

logger = get_logger(__name__)


def build_admission_strategy(strategy: str) -> AdmissionStrategy:
    """
    Strategy selection:
    - "optimistic": no gate, the capacity tracker decides (default)
    - "redis": Redis fail-fast gate; falls back to optimistic when Redis is disabled
    """
    if strategy == "redis":
        client = get_redis()
        if client is not None:
            return RedisAdmission(client)
        logger.warning("admission_strategy_fallback", requested="redis", reason="redis_disabled")
    return OptimisticAdmission()


@lru_cache()
def get_admission() -> AdmissionStrategy:
    """Admission strategy configured by ADMISSION_STRATEGY."""
    return build_admission_strategy(get_settings().ADMISSION_STRATEGY)
