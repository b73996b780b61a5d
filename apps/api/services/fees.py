"""Fee split between provider, inviter and platform.

All math runs on integer token base units; the platform share is always the
residual so the three parts sum exactly to the original amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

from config import settings
from services.errors import InvalidAmount


BASIS_POINTS = 10000


@dataclass(frozen=True)
class FeeBreakdown:
    original_amount: int
    platform_fee_rate: int
    inviter_fee_rate: int
    provider_amount: int
    inviter_amount: int
    platform_amount: int

    @property
    def provider_fee_rate(self) -> int:
        return BASIS_POINTS - self.platform_fee_rate - self.inviter_fee_rate

    def as_dict(self) -> dict:
        return {
            "original_amount": self.original_amount,
            "platform_fee_rate": self.platform_fee_rate,
            "inviter_fee_rate": self.inviter_fee_rate,
            "provider_amount": self.provider_amount,
            "inviter_amount": self.inviter_amount,
            "platform_amount": self.platform_amount,
        }


def fee_rates(has_inviter: bool) -> tuple[int, int]:
    """Return ``(platform_fee_rate, inviter_fee_rate)`` in basis points."""
    if has_inviter:
        platform_rate = int(settings.REFERRAL_PLATFORM_FEE_RATE_BPS)
        inviter_rate = int(settings.REFERRAL_INVITER_FEE_RATE_BPS)
    else:
        platform_rate = int(settings.PLATFORM_FEE_RATE_BPS)
        inviter_rate = 0
    if platform_rate < 0 or inviter_rate < 0 or platform_rate + inviter_rate > BASIS_POINTS:
        raise ValueError("Configured fee rates must be non-negative and sum to at most 10000 bp")
    return platform_rate, inviter_rate


def split_amount(original_amount: int, platform_fee_rate: int, inviter_fee_rate: int) -> FeeBreakdown:
    """Split ``original_amount`` base units using explicit rates."""
    if isinstance(original_amount, bool) or not isinstance(original_amount, int):
        raise InvalidAmount("Amount must be an integer number of base units.", amount=str(original_amount))
    if original_amount < 0:
        raise InvalidAmount("Amount must not be negative.", amount=original_amount)
    if platform_fee_rate < 0 or inviter_fee_rate < 0 or platform_fee_rate + inviter_fee_rate > BASIS_POINTS:
        raise InvalidAmount(
            "Fee rates must be non-negative and sum to at most 10000 basis points.",
            platform_fee_rate=platform_fee_rate,
            inviter_fee_rate=inviter_fee_rate,
        )

    provider_amount = original_amount * (BASIS_POINTS - platform_fee_rate - inviter_fee_rate) // BASIS_POINTS
    inviter_amount = original_amount * inviter_fee_rate // BASIS_POINTS
    platform_amount = original_amount - provider_amount - inviter_amount
    return FeeBreakdown(
        original_amount=original_amount,
        platform_fee_rate=platform_fee_rate,
        inviter_fee_rate=inviter_fee_rate,
        provider_amount=provider_amount,
        inviter_amount=inviter_amount,
        platform_amount=platform_amount,
    )


def calculate_fees(original_amount: int, has_inviter: bool) -> FeeBreakdown:
    """Derive fee rates and amounts for a booking price in base units."""
    platform_rate, inviter_rate = fee_rates(has_inviter)
    return split_amount(original_amount, platform_rate, inviter_rate)


def to_base_units(amount: Union[Decimal, int, str], decimals: Optional[int] = None) -> int:
    """Convert a token amount (e.g. ``Decimal("19.80")``) to integer base units."""
    token_decimals = settings.SETTLEMENT_TOKEN_DECIMALS if decimals is None else decimals
    value = Decimal(str(amount))
    if value < 0:
        raise InvalidAmount("Amount must not be negative.", amount=value)
    scaled = value.scaleb(token_decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(
            f"Amount has more than {token_decimals} decimal places.",
            amount=value,
        )
    return int(scaled)


def from_base_units(units: int, decimals: Optional[int] = None) -> Decimal:
    """Convert integer base units back to a token amount."""
    token_decimals = settings.SETTLEMENT_TOKEN_DECIMALS if decimals is None else decimals
    return (Decimal(int(units)).scaleb(-token_decimals)).quantize(
        Decimal(1).scaleb(-token_decimals), rounding=ROUND_DOWN
    )
