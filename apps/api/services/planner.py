"""Points usage planning for a single booking payment."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Union

from config import settings
from services.errors import InvalidAmount


CENT = Decimal("0.01")

AmountLike = Union[Decimal, int, str]


@dataclass(frozen=True)
class SettlementPlan:
    original_amount: Decimal
    usdc_to_pay: Decimal
    points_to_use: int
    points_value: Decimal
    can_afford: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "original_amount": str(self.original_amount),
            "usdc_to_pay": str(self.usdc_to_pay),
            "points_to_use": self.points_to_use,
            "points_value": str(self.points_value),
            "can_afford": self.can_afford,
        }


def _as_decimal(value: AmountLike, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except ArithmeticError as exc:
        raise InvalidAmount(f"{field} is not a valid amount.", field=field) from exc
    if not amount.is_finite() or amount < 0:
        raise InvalidAmount(f"{field} must be a non-negative amount.", field=field, amount=str(value))
    return amount


def _price(value: AmountLike) -> Decimal:
    amount = _as_decimal(value, "original_amount")
    if amount != amount.quantize(CENT):
        raise InvalidAmount("original_amount must have at most 2 decimal places.", amount=amount)
    return amount.quantize(CENT)


def points_to_usd(points: int) -> Decimal:
    return (Decimal(int(points)) / Decimal(settings.POINTS_PER_DOLLAR)).quantize(CENT)


def usd_to_points(amount: AmountLike) -> int:
    """Whole points worth ``amount`` dollars, rounding down."""
    value = _as_decimal(amount, "amount")
    return int((value * settings.POINTS_PER_DOLLAR).to_integral_value(rounding=ROUND_FLOOR))


def calculate_points_usage(
    original_amount: AmountLike,
    usdc_balance: AmountLike,
    points_balance: int,
    use_points: bool = True,
) -> SettlementPlan:
    """Decide how much of ``original_amount`` is paid on-chain vs. covered by points.

    Points only offset a USDC shortfall: when the on-chain balance already
    covers the price, no points are spent and any surplus stays in the account.
    """
    price = _price(original_amount)
    balance = _as_decimal(usdc_balance, "usdc_balance")
    if isinstance(points_balance, bool) or int(points_balance) != points_balance or points_balance < 0:
        raise InvalidAmount("points_balance must be a non-negative integer.", points_balance=points_balance)
    points_balance = int(points_balance)

    if not use_points or points_balance == 0:
        return SettlementPlan(
            original_amount=price,
            usdc_to_pay=price,
            points_to_use=0,
            points_value=Decimal("0.00"),
            can_afford=balance >= price,
        )

    shortfall = max(Decimal("0"), price - balance)
    # Floor so the points spent never exceed the shortfall.
    points_needed = usd_to_points(shortfall)
    points_to_use = min(points_balance, points_needed)
    points_value = points_to_usd(points_to_use)
    usdc_to_pay = (price - points_value).quantize(CENT)

    return SettlementPlan(
        original_amount=price,
        usdc_to_pay=usdc_to_pay,
        points_to_use=points_to_use,
        points_value=points_value,
        can_afford=balance >= usdc_to_pay,
    )
