from decimal import Decimal

import pytest

from services.errors import InvalidAmount
from services.fees import calculate_fees, fee_rates, from_base_units, split_amount, to_base_units


def test_fee_rates_depend_on_inviter():
    assert fee_rates(has_inviter=False) == (1000, 0)
    assert fee_rates(has_inviter=True) == (500, 500)


def test_twenty_dollar_booking_without_inviter():
    fees = calculate_fees(to_base_units(Decimal("20.00")), has_inviter=False)
    assert fees.provider_amount == 18_000_000
    assert fees.inviter_amount == 0
    assert fees.platform_amount == 2_000_000
    assert fees.provider_fee_rate == 9000


def test_twenty_dollar_booking_with_inviter():
    fees = calculate_fees(to_base_units(Decimal("20.00")), has_inviter=True)
    assert from_base_units(fees.provider_amount) == Decimal("18.000000")
    assert from_base_units(fees.inviter_amount) == Decimal("1.000000")
    assert from_base_units(fees.platform_amount) == Decimal("1.000000")


@pytest.mark.parametrize("amount", [0, 1, 7, 33, 999_999, 19_990_000, 123_456_789])
@pytest.mark.parametrize("has_inviter", [False, True])
def test_split_parts_always_sum_to_original(amount, has_inviter):
    fees = calculate_fees(amount, has_inviter=has_inviter)
    assert fees.provider_amount + fees.inviter_amount + fees.platform_amount == amount
    assert min(fees.provider_amount, fees.inviter_amount, fees.platform_amount) >= 0


def test_platform_takes_rounding_residual():
    fees = split_amount(7, 500, 500)
    # 7 * 0.9 = 6.3 -> 6, 7 * 0.05 = 0.35 -> 0
    assert (fees.provider_amount, fees.inviter_amount, fees.platform_amount) == (6, 0, 1)


def test_split_rejects_negative_amounts_and_bad_rates():
    with pytest.raises(InvalidAmount):
        split_amount(-1, 1000, 0)
    with pytest.raises(InvalidAmount):
        split_amount(100, 9000, 2000)
    with pytest.raises(InvalidAmount):
        split_amount(Decimal("1.5"), 1000, 0)


def test_base_unit_conversion_rejects_excess_precision():
    assert to_base_units(Decimal("19.80")) == 19_800_000
    assert to_base_units("0.000001") == 1
    with pytest.raises(InvalidAmount):
        to_base_units(Decimal("0.0000001"))
    with pytest.raises(InvalidAmount):
        to_base_units(Decimal("-1"))
