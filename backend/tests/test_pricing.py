"""
Tests for credit pricing and partner payout arithmetic.
"""

import pytest

from studio_booking.services.pricing import CREDIT_PACKAGES, compute_payout_split, get_package, price_for_credits


def test_unit_price():
    assert price_for_credits(1) == 100
    assert price_for_credits(25) == 2500


def test_packages():
    assert [(p.id, p.credits, p.price) for p in CREDIT_PACKAGES] == [
        ("basic", 10, 1000),
        ("standard", 50, 4500),
        ("premium", 100, 8000),
        ("ultimate", 250, 17500),
    ]
    assert get_package("premium").credits == 100
    assert get_package("nope") is None


def test_payout_split():
    split = compute_payout_split(1000, 1500)
    assert (split.commission, split.partner_payout) == (150, 850)


@pytest.mark.parametrize(
    "gross,bps,commission",
    [
        (1, 5000, 1),      # 0.5 rounds up
        (3, 1500, 0),      # 0.45 rounds down
        (10, 1500, 2),     # 1.5 rounds up
        (0, 1500, 0),
        (999, 0, 0),
        (999, 10000, 999),
    ],
)
def test_payout_split_rounding(gross, bps, commission):
    split = compute_payout_split(gross, bps)
    assert split.commission == commission
    assert split.commission + split.partner_payout == gross


@pytest.mark.parametrize("gross,bps", [(-1, 1500), (100, -1), (100, 10001)])
def test_payout_split_rejects_bad_input(gross, bps):
    with pytest.raises(ValueError):
        compute_payout_split(gross, bps)
