from decimal import Decimal

import pytest

from services.errors import InvalidAmount
from services.planner import calculate_points_usage, points_to_usd, usd_to_points


def test_points_cover_small_shortfall():
    plan = calculate_points_usage(Decimal("20.00"), Decimal("19.80"), 20)
    assert plan.usdc_to_pay == Decimal("19.80")
    assert plan.points_to_use == 20
    assert plan.points_value == Decimal("0.20")
    assert plan.can_afford is True


def test_points_untouched_when_usdc_covers_price():
    plan = calculate_points_usage(Decimal("20.00"), Decimal("25.00"), 50)
    assert plan.usdc_to_pay == Decimal("20.00")
    assert plan.points_to_use == 0
    assert plan.points_value == Decimal("0.00")
    assert plan.can_afford is True


def test_partial_point_cover_still_unaffordable():
    plan = calculate_points_usage(Decimal("20.00"), Decimal("19.50"), 20)
    assert plan.points_to_use == 20
    assert plan.usdc_to_pay == Decimal("19.80")
    assert plan.can_afford is False


def test_use_points_false_pays_full_price():
    plan = calculate_points_usage(Decimal("20.00"), Decimal("19.80"), 500, use_points=False)
    assert plan.usdc_to_pay == Decimal("20.00")
    assert plan.points_to_use == 0
    assert plan.can_afford is False


def test_sub_cent_shortfall_never_overspends_points():
    plan = calculate_points_usage(Decimal("20.00"), Decimal("19.995"), 100)
    # Half a cent short: no whole point fits inside the shortfall.
    assert plan.points_to_use == 0
    assert plan.usdc_to_pay == Decimal("20.00")


@pytest.mark.parametrize(
    "price,balance,points",
    [
        ("20.00", "0", 0),
        ("20.00", "5.00", 10_000),
        ("0.01", "0", 1),
        ("99.99", "50.55", 3_000),
        ("150.00", "149.99", 7),
    ],
)
def test_plan_invariants(price, balance, points):
    plan = calculate_points_usage(Decimal(price), Decimal(balance), points)
    shortfall = max(Decimal("0"), Decimal(price) - Decimal(balance))
    assert plan.usdc_to_pay + plan.points_value == plan.original_amount
    assert 0 <= plan.points_to_use <= points
    assert plan.points_value <= shortfall
    assert plan.points_value == points_to_usd(plan.points_to_use)
    assert plan.can_afford == (Decimal(balance) >= plan.usdc_to_pay)


def test_point_conversions():
    assert points_to_usd(150) == Decimal("1.50")
    assert usd_to_points(Decimal("1.50")) == 150
    assert usd_to_points(Decimal("0.019")) == 1


def test_invalid_amounts_are_rejected():
    with pytest.raises(InvalidAmount):
        calculate_points_usage(Decimal("-1"), Decimal("10"), 0)
    with pytest.raises(InvalidAmount):
        calculate_points_usage(Decimal("10.001"), Decimal("10"), 0)
    with pytest.raises(InvalidAmount):
        calculate_points_usage(Decimal("10"), Decimal("10"), -5)
