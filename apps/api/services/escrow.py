"""In-process model of the escrow contract's settlement rules.

The Solidity contract is the source of truth on-chain; this model mirrors its
checks so the backend can verify that what it signs will be accepted, and so
completion events can be reconciled against the expected split.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from services.errors import (
    AuthorizationExpired,
    AuthorizationReplayed,
    InvalidAuthorization,
    InvalidBookingState,
    InvalidSignature,
)
from services.fees import split_amount
from services.signer import ZERO_ADDRESS, AuthorizationSigner

logger = logging.getLogger(__name__)

CREATED = "Created"
PAID = "Paid"
COMPLETED = "Completed"
CANCELLED = "Cancelled"
REFUNDED = "Refunded"


@dataclass(frozen=True)
class Distribution:
    provider_amount: int
    inviter_amount: int
    platform_amount: int

    @property
    def total(self) -> int:
        return self.provider_amount + self.inviter_amount + self.platform_amount


@dataclass
class EscrowBooking:
    booking_id: bytes
    customer: str
    provider: str
    inviter: str
    amount: int
    original_amount: int
    platform_fee_rate: int
    inviter_fee_rate: int
    status: str = CREATED


@dataclass
class EscrowEvent:
    name: str
    args: Dict[str, Any]


def compute_distribution(
    amount: int,
    original_amount: int,
    platform_fee_rate: int,
    inviter_fee_rate: int,
) -> Distribution:
    """Split the escrowed ``amount``; provider and inviter shares come from ``original_amount``.

    The platform receives whatever remains, so any points subsidy reduces only
    the platform's share.
    """
    if original_amount < amount:
        raise InvalidAuthorization("originalAmount must be greater than or equal to amount.")
    entitlement = split_amount(original_amount, platform_fee_rate, inviter_fee_rate)
    obligations = entitlement.provider_amount + entitlement.inviter_amount
    if amount < obligations:
        raise InvalidAuthorization(
            "Escrowed amount does not cover provider and inviter shares.",
            amount=amount,
            required=obligations,
        )
    return Distribution(
        provider_amount=entitlement.provider_amount,
        inviter_amount=entitlement.inviter_amount,
        platform_amount=amount - obligations,
    )


@dataclass
class EscrowContract:
    """Contract state: bookings keyed by bytes32 id, used nonces, token balances."""

    signer: AuthorizationSigner
    platform_wallet: str
    bookings: Dict[bytes, EscrowBooking] = field(default_factory=dict)
    used_nonces: Set[int] = field(default_factory=set)
    balances: Dict[str, int] = field(default_factory=dict)
    events: List[EscrowEvent] = field(default_factory=list)

    def _check_authorization(
        self, primary_type: str, authorization: Dict[str, Any], signature: str, now: Optional[int]
    ) -> None:
        if not self.signer.verify(primary_type, authorization, signature):
            raise InvalidSignature("Authorization was not signed by the backend signer.")
        current = int(now if now is not None else time.time())
        if current > int(authorization["expiry"]):
            raise AuthorizationExpired("Authorization has expired.", expiry=int(authorization["expiry"]))
        nonce = int(authorization["nonce"])
        if nonce in self.used_nonces:
            raise AuthorizationReplayed("Authorization nonce has already been used.")
        self.used_nonces.add(nonce)

    def _transfer(self, to: str, amount: int) -> None:
        self.balances[to] = self.balances.get(to, 0) + amount

    def pay(self, authorization: Dict[str, Any], signature: str, now: Optional[int] = None) -> EscrowBooking:
        """createAndPayBooking: escrow ``authorization['amount']`` from the customer."""
        booking_id = authorization["bookingId"]
        if booking_id in self.bookings:
            raise InvalidBookingState("Booking already exists in escrow.")
        amount = int(authorization["amount"])
        original_amount = int(authorization["originalAmount"])
        if original_amount < amount:
            raise InvalidAuthorization("originalAmount must be greater than or equal to amount.")
        # Validates amount >= provider + inviter before any state changes.
        compute_distribution(
            amount,
            original_amount,
            int(authorization["platformFeeRate"]),
            int(authorization["inviterFeeRate"]),
        )
        self._check_authorization("BookingAuthorization", authorization, signature, now)

        booking = EscrowBooking(
            booking_id=booking_id,
            customer=authorization["customer"],
            provider=authorization["provider"],
            inviter=authorization["inviter"],
            amount=amount,
            original_amount=original_amount,
            platform_fee_rate=int(authorization["platformFeeRate"]),
            inviter_fee_rate=int(authorization["inviterFeeRate"]),
            status=PAID,
        )
        self.bookings[booking_id] = booking
        self.events.append(
            EscrowEvent(
                "BookingCreatedAndPaid",
                {
                    "bookingId": booking_id,
                    "customer": booking.customer,
                    "provider": booking.provider,
                    "inviter": booking.inviter,
                    "amount": amount,
                    "originalAmount": original_amount,
                    "platformFeeRate": booking.platform_fee_rate,
                    "inviterFeeRate": booking.inviter_fee_rate,
                    "nonce": int(authorization["nonce"]),
                },
            )
        )
        return booking

    def complete(self, booking_id: bytes) -> Distribution:
        """completeService: Paid → Completed, paying provider, inviter, platform in order."""
        booking = self.bookings.get(booking_id)
        if booking is None:
            raise InvalidBookingState("Booking does not exist in escrow.")
        if booking.status != PAID:
            raise InvalidBookingState("Booking is not awaiting completion.", status=booking.status)

        distribution = compute_distribution(
            booking.amount,
            booking.original_amount,
            booking.platform_fee_rate,
            booking.inviter_fee_rate,
        )
        booking.status = COMPLETED
        transfers: List[Tuple[str, int]] = [(booking.provider, distribution.provider_amount)]
        if distribution.inviter_amount > 0 and booking.inviter != ZERO_ADDRESS:
            transfers.append((booking.inviter, distribution.inviter_amount))
        if distribution.platform_amount > 0:
            transfers.append((self.platform_wallet, distribution.platform_amount))
        for recipient, value in transfers:
            self._transfer(recipient, value)

        self.events.append(
            EscrowEvent(
                "ServiceCompleted",
                {
                    "bookingId": booking_id,
                    "provider": booking.provider,
                    "providerAmount": distribution.provider_amount,
                    "platformFee": distribution.platform_amount,
                    "inviterFee": distribution.inviter_amount,
                },
            )
        )
        return distribution

    def cancel(self, authorization: Dict[str, Any], signature: str, now: Optional[int] = None) -> Distribution:
        """cancelBookingAsCustomer/Provider: apply a signed refund split to a paid booking."""
        booking = self.bookings.get(authorization["bookingId"])
        if booking is None:
            raise InvalidBookingState("Booking does not exist in escrow.")
        if booking.status not in (CREATED, PAID):
            raise InvalidBookingState("Booking can no longer be cancelled.", status=booking.status)
        customer_amount = int(authorization["customerAmount"])
        split = Distribution(
            provider_amount=int(authorization["providerAmount"]),
            inviter_amount=int(authorization["inviterAmount"]),
            platform_amount=int(authorization["platformAmount"]),
        )
        if customer_amount + split.total != booking.amount:
            raise InvalidAuthorization("Cancellation split must equal the escrowed amount.")
        self._check_authorization("CancellationAuthorization", authorization, signature, now)

        booking.status = REFUNDED if customer_amount > 0 else CANCELLED
        self._transfer(booking.customer, customer_amount)
        self._transfer(booking.provider, split.provider_amount)
        if split.inviter_amount > 0 and booking.inviter != ZERO_ADDRESS:
            self._transfer(booking.inviter, split.inviter_amount)
        else:
            split = Distribution(split.provider_amount, 0, split.platform_amount + split.inviter_amount)
        self._transfer(self.platform_wallet, split.platform_amount)
        self.events.append(
            EscrowEvent(
                "BookingCancelled",
                {
                    "bookingId": booking.booking_id,
                    "customerAmount": customer_amount,
                    "providerAmount": split.provider_amount,
                    "platformAmount": split.platform_amount,
                    "inviterAmount": split.inviter_amount,
                    "reason": authorization.get("reason", ""),
                },
            )
        )
        return split
