"""Cancellation refund policy and signed cancellation authorizations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.errors import BookingNotFound, InvalidBookingState
from services.escrow import Distribution
from services.fees import BASIS_POINTS, to_base_units
from services.settlement import get_booking
from services.signer import AuthorizationSigner, SignedAuthorization, get_signer
from models.booking_authorization import BookingAuthorization

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
PROVIDER = "provider"

# (minimum hours before start, refund in basis points), checked in order.
CUSTOMER_REFUND_POLICY = (
    (48, 10000),
    (24, 7500),
    (0, 5000),
)
PROVIDER_REFUND_BPS = 10000


@dataclass(frozen=True)
class CancellationQuote:
    refund_rate: int
    customer_amount: int
    distribution: Distribution

    def as_dict(self) -> Dict[str, Any]:
        return {
            "refund_rate": self.refund_rate,
            "customer_amount": self.customer_amount,
            "provider_amount": self.distribution.provider_amount,
            "inviter_amount": self.distribution.inviter_amount,
            "platform_amount": self.distribution.platform_amount,
        }


def refund_rate_bps(role: str, hours_until_start: Optional[float]) -> int:
    """Share of the escrowed amount returned to the customer, in basis points."""
    if role == PROVIDER:
        return PROVIDER_REFUND_BPS
    if hours_until_start is None:
        return CUSTOMER_REFUND_POLICY[0][1]
    for min_hours, rate in CUSTOMER_REFUND_POLICY:
        if hours_until_start >= min_hours:
            return rate
    return CUSTOMER_REFUND_POLICY[-1][1]


def split_cancellation(
    amount: int,
    refund_rate: int,
    platform_fee_rate: int,
    inviter_fee_rate: int,
) -> CancellationQuote:
    """Refund the customer first, then split what is retained by the booking's fee rates.

    The platform takes the residual so the parts always sum to ``amount``.
    """
    customer_amount = amount * refund_rate // BASIS_POINTS
    retained = amount - customer_amount
    provider_amount = retained * (BASIS_POINTS - platform_fee_rate - inviter_fee_rate) // BASIS_POINTS
    inviter_amount = retained * inviter_fee_rate // BASIS_POINTS
    return CancellationQuote(
        refund_rate=refund_rate,
        customer_amount=customer_amount,
        distribution=Distribution(
            provider_amount=provider_amount,
            inviter_amount=inviter_amount,
            platform_amount=retained - provider_amount - inviter_amount,
        ),
    )


def _hours_until(scheduled_at: Optional[datetime], now: datetime) -> Optional[float]:
    if scheduled_at is None:
        return None
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    return (scheduled_at - now).total_seconds() / 3600


async def create_cancellation_authorization(
    db: AsyncSession,
    booking_id: str,
    user_id: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    signer: Optional[AuthorizationSigner] = None,
) -> tuple[SignedAuthorization, CancellationQuote]:
    """Sign the refund split for a paid booking on behalf of its customer or provider."""
    booking = await get_booking(db, booking_id)
    if user_id == booking.customer_id:
        role = CUSTOMER
    elif user_id == booking.provider_id:
        role = PROVIDER
    else:
        raise BookingNotFound("Booking not found.", booking_id=booking_id)
    if booking.status != "paid":
        raise InvalidBookingState("Only paid bookings can be cancelled on-chain.", status=booking.status)

    current = now or datetime.now(timezone.utc)
    rate = refund_rate_bps(role, _hours_until(booking.scheduled_at, current))
    inviter_rate = booking.inviter_fee_rate if booking.inviter_id else 0
    quote = split_cancellation(
        to_base_units(booking.usdc_paid),
        rate,
        booking.platform_fee_rate,
        inviter_rate,
    )
    reason_text = (reason or f"Cancelled by {role}").strip()

    active_signer = signer or get_signer()
    signed = active_signer.sign_cancellation_authorization(
        booking_id=booking.id,
        customer_amount=quote.customer_amount,
        provider_amount=quote.distribution.provider_amount,
        platform_amount=quote.distribution.platform_amount,
        inviter_amount=quote.distribution.inviter_amount,
        reason=reason_text,
        now=int(current.timestamp()),
    )
    db.add(
        BookingAuthorization(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            kind="cancellation",
            nonce=str(signed.nonce),
            signature=signed.signature,
            amount_units=quote.customer_amount,
            original_amount_units=to_base_units(booking.usdc_paid),
            platform_fee_rate=booking.platform_fee_rate,
            inviter_fee_rate=inviter_rate,
            expires_at=datetime.fromtimestamp(signed.expiry, tz=timezone.utc),
        )
    )
    booking.cancellation_reason = reason_text
    booking.cancelled_by = user_id
    await db.commit()
    logger.info(
        "Cancellation authorization booking=%s role=%s refund_rate=%s refund=%s",
        booking_id,
        role,
        rate,
        quote.customer_amount,
    )
    return signed, quote
