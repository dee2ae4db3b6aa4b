"""
Credit pricing and partner payout arithmetic.

All amounts are whole currency subunits and whole credits; package prices
are static configuration, never derived from a discount rate.
"""

from dataclasses import dataclass
from typing import Optional

from studio_booking.core.config import get_settings


@dataclass(frozen=True)
class CreditPackage:
    id: str
    name: str
    credits: int
    price: int  # currency subunits
    description: str
    popular: bool = False


CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage("basic", "Basic Pack", 10, 1000, "Perfect for trying out our platform"),
    CreditPackage("standard", "Standard Pack", 50, 4500, "Most popular choice for regular users", popular=True),
    CreditPackage("premium", "Premium Pack", 100, 8000, "Best value for fitness enthusiasts"),
    CreditPackage("ultimate", "Ultimate Pack", 250, 17500, "For studios and heavy users"),
)


def get_package(package_id: str) -> Optional[CreditPackage]:
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    return None


def price_for_credits(credits: int) -> int:
    """Price of an ad-hoc purchase at the unit rate."""
    return credits * get_settings().CREDIT_UNIT_AMOUNT


@dataclass(frozen=True)
class PayoutSplit:
    gross: int
    commission: int
    partner_payout: int


def compute_payout_split(gross: int, commission_bps: int) -> PayoutSplit:
    """Split a gross amount between platform commission and partner payout.

    Commission is rounded half-up to a whole unit; the payout is the
    remainder, so commission + payout == gross exactly.
    """
    if gross < 0:
        raise ValueError("gross must be non-negative")
    if not 0 <= commission_bps <= 10000:
        raise ValueError("commission_bps must be within 0..10000")
    commission = (gross * commission_bps + 5000) // 10000
    return PayoutSplit(gross=gross, commission=commission, partner_payout=gross - commission)
