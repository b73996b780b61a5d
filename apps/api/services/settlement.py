"""Booking settlement orchestration.

Creates the settlement plan and signed authorization for a booking, then
finalizes bookkeeping when the escrow contract reports payment, completion or
cancellation. Points are debited only after the payment is observed on-chain.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from redis.exceptions import RedisError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.blockchain_event import BlockchainEvent
from models.booking import Booking
from models.booking_authorization import BookingAuthorization
from models.points_reconciliation import PointsReconciliation
from models.service import Service
from models.user import User
from services import points as ledger
from services.chain import verify_payment_receipt
from services.errors import (
    AuthorizationReplayed,
    InsufficientBalance,
    InvalidAmount,
    InvalidAuthorization,
    InvalidBookingState,
    BookingNotFound,
    PaymentMismatch,
    ServiceNotFound,
    SettlementError,
    SettlementValidationError,
    WalletNotFound,
)
from services.escrow import compute_distribution
from services.fees import FeeBreakdown, calculate_fees, to_base_units
from services.planner import CENT, SettlementPlan, calculate_points_usage
from services.signer import AuthorizationSigner, SignedAuthorization, booking_id_to_bytes32, get_signer
from services.wallets import wallet_for

logger = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "completed")
CLOSED_STATUSES = ("cancelled", "refunded")
OPEN_BOOKING_STATUSES = ("pending", "pending_payment")
# Reconciliations whose debit has not landed yet.
UNSETTLED_RECONCILIATION_STATUSES = ("pending", "retrying", "manual_review")


@dataclass
class SettlementResult:
    booking: Booking
    plan: SettlementPlan
    fees: FeeBreakdown
    authorization: SignedAuthorization
    domain: Dict[str, Any]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking.id,
            "status": self.booking.status,
            "plan": self.plan.as_dict(),
            "fees": self.fees.as_dict(),
            "authorization": self.authorization.as_dict()["authorization"],
            "signature": self.authorization.signature,
            "expiry": self.authorization.expiry,
            "domain": self.domain,
        }


def booking_to_dict(booking: Booking) -> Dict[str, Any]:
    return {
        "id": booking.id,
        "service_id": booking.service_id,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id,
        "inviter_id": booking.inviter_id,
        "status": booking.status,
        "original_amount": str(booking.original_amount),
        "points_used": int(booking.points_used or 0),
        "points_value": str(booking.points_value),
        "usdc_paid": str(booking.usdc_paid),
        "platform_fee_rate": booking.platform_fee_rate,
        "inviter_fee_rate": booking.inviter_fee_rate,
        "blockchain_booking_id": booking.blockchain_booking_id,
        "blockchain_tx_hash": booking.blockchain_tx_hash,
        "provider_payout": booking.provider_payout,
        "inviter_payout": booking.inviter_payout,
        "platform_payout": booking.platform_payout,
        "refund_amount": booking.refund_amount,
        "paid_at": booking.paid_at.isoformat() if booking.paid_at else None,
        "completed_at": booking.completed_at.isoformat() if booking.completed_at else None,
        "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
    }


def _event_payload(event_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {key: (str(value) if isinstance(value, (int, Decimal)) and not isinstance(value, bool) else value)
            for key, value in (event_data or {}).items()}


def _as_aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingNotFound("Booking not found.", booking_id=booking_id)
    return booking


async def _get_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise WalletNotFound("User not found.", user_id=user_id)
    return user


async def _resolve_inviter(db: AsyncSession, provider: User, customer_id: str) -> tuple[Optional[str], Optional[str]]:
    """Inviter is whoever referred the provider, when they can receive payouts."""
    inviter_id = provider.referred_by
    if not inviter_id or inviter_id in (provider.id, customer_id):
        return None, None
    result = await db.execute(select(User).where(User.id == inviter_id))
    inviter = result.scalar_one_or_none()
    if inviter is None:
        return None, None
    try:
        return inviter.id, wallet_for(inviter)
    except WalletNotFound:
        logger.warning("Inviter %s of provider %s has no wallet; settling without referral fee", inviter_id, provider.id)
        return None, None


async def reserved_points(db: AsyncSession, customer_id: str) -> int:
    """Points promised to open bookings or to paid bookings whose debit is still outstanding."""
    open_bookings = await db.execute(
        select(func.coalesce(func.sum(Booking.points_used), 0)).where(
            Booking.customer_id == customer_id,
            Booking.status.in_(OPEN_BOOKING_STATUSES),
        )
    )
    unsettled = await db.execute(
        select(func.coalesce(func.sum(PointsReconciliation.points), 0)).where(
            PointsReconciliation.user_id == customer_id,
            PointsReconciliation.status.in_(UNSETTLED_RECONCILIATION_STATUSES),
        )
    )
    return int(open_bookings.scalar_one()) + int(unsettled.scalar_one())


async def create_booking_settlement(
    db: AsyncSession,
    service_id: str,
    customer_id: str,
    original_amount: Optional[Decimal],
    use_points: bool,
    usdc_balance_hint: Decimal,
    scheduled_at: Optional[datetime] = None,
    signer: Optional[AuthorizationSigner] = None,
    now: Optional[int] = None,
) -> SettlementResult:
    """Plan, sign and persist a booking payment attempt.

    Nothing is written when the customer cannot afford the plan or signing fails.
    """
    result = await db.execute(select(Service).where(Service.id == service_id))
    service = result.scalar_one_or_none()
    if service is None or not service.is_active:
        raise ServiceNotFound("Service not found or not bookable.", service_id=service_id)

    price = Decimal(str(service.price)).quantize(CENT)
    if original_amount is not None and Decimal(str(original_amount)) != price:
        raise InvalidAmount(
            "original_amount does not match the service price.",
            expected=price,
            received=Decimal(str(original_amount)),
        )
    if service.provider_id == customer_id:
        raise SettlementValidationError("Providers cannot book their own service.")

    customer = await _get_user(db, customer_id)
    customer_address = wallet_for(customer)
    account = await ledger.get_balance(db, customer_id)
    reserved = await reserved_points(db, customer_id) if use_points else 0
    spendable_points = max(account.balance - reserved, 0)
    if reserved:
        logger.info(
            "Customer %s has %s of %s points reserved by open bookings", customer_id, reserved, account.balance
        )
    plan = calculate_points_usage(price, usdc_balance_hint, spendable_points, use_points)
    if not plan.can_afford:
        logger.info(
            "Settlement blocked for customer %s: required=%s available=%s",
            customer_id,
            plan.usdc_to_pay,
            usdc_balance_hint,
        )
        raise InsufficientBalance(
            required=plan.usdc_to_pay,
            usdc_available=Decimal(str(usdc_balance_hint)),
            points_available=spendable_points,
        )

    provider = await _get_user(db, service.provider_id)
    provider_address = wallet_for(provider)
    inviter_id, inviter_address = await _resolve_inviter(db, provider, customer_id)
    fees = calculate_fees(to_base_units(price), has_inviter=inviter_address is not None)

    active_signer = signer or get_signer()

    booking = Booking(
        id=str(uuid.uuid4()),
        service_id=service.id,
        customer_id=customer_id,
        provider_id=provider.id,
        inviter_id=inviter_id,
        status="pending",
        scheduled_at=scheduled_at,
        original_amount=plan.original_amount,
        points_used=plan.points_to_use,
        points_value=plan.points_value,
        usdc_paid=plan.usdc_to_pay,
        platform_fee_rate=fees.platform_fee_rate,
        inviter_fee_rate=fees.inviter_fee_rate,
    )
    booking.blockchain_booking_id = "0x" + booking_id_to_bytes32(booking.id).hex()
    db.add(booking)
    try:
        signed = active_signer.sign_booking_authorization(
            booking_id=booking.id,
            customer=customer_address,
            provider=provider_address,
            inviter=inviter_address,
            amount=to_base_units(plan.usdc_to_pay),
            original_amount=fees.original_amount,
            platform_fee_rate=fees.platform_fee_rate,
            inviter_fee_rate=fees.inviter_fee_rate,
            now=now,
        )
        db.add(
            BookingAuthorization(
                id=str(uuid.uuid4()),
                booking_id=booking.id,
                kind="booking",
                nonce=str(signed.nonce),
                signature=signed.signature,
                amount_units=signed.authorization["amount"],
                original_amount_units=signed.authorization["originalAmount"],
                platform_fee_rate=fees.platform_fee_rate,
                inviter_fee_rate=fees.inviter_fee_rate,
                expires_at=datetime.fromtimestamp(signed.expiry, tz=timezone.utc),
            )
        )
        booking.status = "pending_payment"
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "booking_settlement booking=%s customer=%s usdc=%s points=%s inviter=%s",
        booking.id,
        customer_id,
        plan.usdc_to_pay,
        plan.points_to_use,
        inviter_id,
    )
    return SettlementResult(
        booking=booking,
        plan=plan,
        fees=fees,
        authorization=signed,
        domain=dict(active_signer.domain),
    )


async def _match_authorization(
    db: AsyncSession, booking_id: str, nonce: Optional[Any]
) -> Optional[BookingAuthorization]:
    if nonce is None:
        result = await db.execute(
            select(BookingAuthorization)
            .where(
                BookingAuthorization.booking_id == booking_id,
                BookingAuthorization.kind == "booking",
                BookingAuthorization.consumed_at.is_(None),
            )
            .order_by(BookingAuthorization.created_at.desc())
        )
        return result.scalars().first()

    result = await db.execute(select(BookingAuthorization).where(BookingAuthorization.nonce == str(nonce)))
    authorization = result.scalar_one_or_none()
    if authorization is None:
        raise InvalidAuthorization("Payment used an unknown authorization.")
    if authorization.booking_id != booking_id or authorization.kind != "booking":
        raise AuthorizationReplayed("Authorization belongs to a different booking.")
    if authorization.consumed_at is not None:
        raise AuthorizationReplayed("Authorization has already been used.")
    return authorization


async def record_event(
    db: AsyncSession,
    booking_id: Optional[str],
    event_type: str,
    tx_hash: str,
    event_data: Optional[Dict[str, Any]],
    status: str = "PROCESSED",
    error_message: Optional[str] = None,
) -> BlockchainEvent:
    """Stage the event row; a previously FAILED delivery of the same event is overwritten."""
    result = await db.execute(
        select(BlockchainEvent).where(
            BlockchainEvent.transaction_hash == tx_hash,
            BlockchainEvent.event_type == event_type,
        )
    )
    event = result.scalar_one_or_none()
    if event is None or event.processing_status != "FAILED":
        event = BlockchainEvent(id=str(uuid.uuid4()), transaction_hash=tx_hash, event_type=event_type)
        db.add(event)
    log_index = (event_data or {}).get("logIndex")
    event.booking_id = booking_id
    event.log_index = int(log_index) if log_index is not None else None
    event.event_data = _event_payload(event_data)
    event.processing_status = status
    event.error_message = error_message
    return event


async def on_payment_confirmed(
    db: AsyncSession,
    booking_id: str,
    tx_hash: str,
    event_data: Optional[Dict[str, Any]] = None,
) -> Booking:
    """Mark a booking paid after the escrow payment is observed, then debit points once."""
    if not tx_hash:
        raise SettlementValidationError("Transaction hash is required.")
    booking = await get_booking(db, booking_id)
    if booking.status in PAID_STATUSES:
        if booking.blockchain_tx_hash == tx_hash:
            logger.info("Payment confirmation replay for booking %s ignored", booking_id)
            return booking
        raise InvalidBookingState(
            "Booking was already paid by a different transaction.", status=booking.status
        )

    event = event_data or {}
    # The contract accepts a signed payment until its expiry, so the event can
    # arrive after the booking was expired or cancelled off-chain.
    cancelled_off_chain = (
        booking.status == "cancelled" and booking.paid_at is None and booking.refund_amount is None
    )
    if cancelled_off_chain and event.get("nonce") is None:
        raise InvalidBookingState(
            "Booking was cancelled; a late payment must carry its authorization nonce.", status=booking.status
        )
    if booking.status != "pending_payment" and not cancelled_off_chain:
        raise InvalidBookingState("Booking is not awaiting payment.", status=booking.status)

    expected_amount = to_base_units(booking.usdc_paid)
    if event.get("amount") is not None and int(event["amount"]) != expected_amount:
        raise PaymentMismatch(
            "On-chain amount does not match the settlement plan.",
            expected=expected_amount,
            received=int(event["amount"]),
        )
    expected_original = to_base_units(booking.original_amount)
    if event.get("originalAmount") is not None and int(event["originalAmount"]) != expected_original:
        raise PaymentMismatch(
            "On-chain original amount does not match the booking price.",
            expected=expected_original,
            received=int(event["originalAmount"]),
        )
    authorization = await _match_authorization(db, booking.id, event.get("nonce"))
    await verify_payment_receipt(tx_hash)

    now = datetime.now(timezone.utc)
    if cancelled_off_chain:
        logger.warning(
            "Payment tx=%s arrived for booking %s cancelled off-chain (%s); reinstating as paid",
            tx_hash,
            booking_id,
            booking.cancellation_reason,
        )
        booking.cancelled_at = None
        booking.cancelled_by = None
        booking.cancellation_reason = None
    booking.status = "paid"
    booking.blockchain_tx_hash = tx_hash
    if not booking.blockchain_booking_id:
        booking.blockchain_booking_id = event.get("bookingId") or "0x" + booking_id_to_bytes32(booking.id).hex()
    booking.paid_at = now
    if authorization is not None:
        authorization.consumed_at = now
        authorization.consumed_tx_hash = tx_hash
    await record_event(db, booking.id, "BookingCreatedAndPaid", tx_hash, event)
    try:
        await db.commit()
    except IntegrityError:
        # Same event delivered concurrently; the winner already moved the booking.
        await db.rollback()
        booking = await get_booking(db, booking_id)
        if booking.status in PAID_STATUSES and booking.blockchain_tx_hash == tx_hash:
            return booking
        raise

    customer_id = booking.customer_id
    points_used = int(booking.points_used or 0)
    logger.info("Booking %s paid tx=%s", booking_id, tx_hash)
    if points_used > 0:
        await _debit_points_for_booking(db, booking_id, customer_id, points_used, str(booking.points_value), tx_hash)
        await db.refresh(booking)
    return booking


async def _debit_points_for_booking(
    db: AsyncSession,
    booking_id: str,
    customer_id: str,
    points_used: int,
    points_value: str,
    tx_hash: str,
) -> None:
    try:
        await ledger.debit(
            db,
            customer_id,
            points_used,
            "booking_debit",
            reference_type="booking",
            reference_id=booking_id,
            description=f"Booking payment ({points_used} points = ${points_value})",
            metadata={"tx_hash": tx_hash},
        )
    except SettlementError as exc:
        # Funds already moved on-chain; the debit must not be lost.
        logger.error(
            "Points debit failed after payment confirmation booking=%s user=%s points=%s: %s",
            booking_id,
            customer_id,
            points_used,
            exc.message,
        )
        await queue_points_reconciliation(db, booking_id, customer_id, points_used, exc.message)


async def queue_points_reconciliation(
    db: AsyncSession, booking_id: str, user_id: str, points: int, error_message: str
) -> PointsReconciliation:
    """Persist a pending debit and hand it to the worker queue."""
    result = await db.execute(select(PointsReconciliation).where(PointsReconciliation.booking_id == booking_id))
    item = result.scalar_one_or_none()
    if item is None:
        item = PointsReconciliation(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            user_id=user_id,
            points=points,
            status="pending",
            last_error=error_message,
        )
        db.add(item)
        await db.commit()

    from services.settlement_queue import enqueue_points_reconciliation

    try:
        enqueue_points_reconciliation(item.id)
    except RedisError as exc:
        # Picked up by requeue_open_reconciliations on the next startup.
        logger.warning("Could not enqueue points reconciliation %s: %s", item.id, exc)
    return item


async def on_service_completed(
    db: AsyncSession,
    booking_id: str,
    tx_hash: str,
    event_data: Optional[Dict[str, Any]] = None,
) -> Booking:
    """Record the escrow payout; a second completion for the same booking is a no-op."""
    booking = await get_booking(db, booking_id)
    if booking.status == "completed":
        logger.info("Completion replay for booking %s ignored", booking_id)
        return booking
    if booking.status != "paid":
        raise InvalidBookingState("Booking is not awaiting completion.", status=booking.status)

    expected = compute_distribution(
        to_base_units(booking.usdc_paid),
        to_base_units(booking.original_amount),
        booking.platform_fee_rate,
        booking.inviter_fee_rate,
    )
    if booking.inviter_id is None:
        expected_inviter = 0
    else:
        expected_inviter = expected.inviter_amount
    event = event_data or {}
    provider_amount = int(event.get("providerAmount", expected.provider_amount))
    inviter_amount = int(event.get("inviterFee", expected_inviter))
    platform_amount = int(event.get("platformFee", expected.platform_amount))
    if (provider_amount, inviter_amount, platform_amount) != (
        expected.provider_amount,
        expected_inviter,
        expected.platform_amount,
    ):
        logger.error(
            "Completion payout mismatch booking=%s expected=%s reported=%s",
            booking_id,
            (expected.provider_amount, expected_inviter, expected.platform_amount),
            (provider_amount, inviter_amount, platform_amount),
        )

    booking.status = "completed"
    booking.completed_at = datetime.now(timezone.utc)
    booking.provider_payout = provider_amount
    booking.inviter_payout = inviter_amount
    booking.platform_payout = platform_amount
    await record_event(db, booking.id, "ServiceCompleted", tx_hash, event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        booking = await get_booking(db, booking_id)
        if booking.status == "completed":
            return booking
        raise
    logger.info("Booking %s completed provider=%s platform=%s", booking_id, provider_amount, platform_amount)
    return booking


async def on_booking_cancelled(
    db: AsyncSession,
    booking_id: str,
    tx_hash: str,
    event_data: Optional[Dict[str, Any]] = None,
) -> Booking:
    """Close a cancelled booking and return every point it spent."""
    booking = await get_booking(db, booking_id)
    if booking.status in CLOSED_STATUSES:
        logger.info("Cancellation replay for booking %s ignored", booking_id)
        return booking
    if booking.status == "completed":
        raise InvalidBookingState("Completed bookings cannot be cancelled.", status=booking.status)

    event = event_data or {}
    was_paid = booking.status == "paid"
    paid_units = to_base_units(booking.usdc_paid)
    refund_units = int(event.get("customerAmount", paid_units if was_paid else 0))
    booking.status = "refunded" if was_paid and refund_units > 0 else "cancelled"
    booking.refund_amount = refund_units
    booking.cancelled_at = datetime.now(timezone.utc)
    if event.get("reason"):
        booking.cancellation_reason = str(event["reason"])
    if was_paid:
        booking.provider_payout = int(event.get("providerAmount", 0))
        booking.inviter_payout = int(event.get("inviterAmount", 0))
        booking.platform_payout = int(event.get("platformAmount", 0))
    await record_event(db, booking.id, "BookingCancelled", tx_hash, event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        booking = await get_booking(db, booking_id)
        if booking.status in CLOSED_STATUSES:
            return booking
        raise

    customer_id = booking.customer_id
    points_used = int(booking.points_used or 0)
    if was_paid and points_used > 0:
        await _return_points_for_booking(db, booking_id, customer_id, points_used)
        await db.refresh(booking)
    logger.info("Booking %s %s refund=%s", booking_id, booking.status, refund_units)
    return booking


async def _return_points_for_booking(db: AsyncSession, booking_id: str, customer_id: str, points: int) -> None:
    result = await db.execute(select(PointsReconciliation).where(PointsReconciliation.booking_id == booking_id))
    pending = result.scalar_one_or_none()
    if pending is not None and pending.status != "resolved":
        # The debit never landed, so there is nothing to give back.
        pending.status = "cancelled"
        pending.resolved_at = datetime.now(timezone.utc)
        await db.commit()
        return
    if points <= 0:
        return
    # Points come back in full even when the cash refund is partial.
    await ledger.credit(
        db,
        customer_id,
        points,
        "refund_credit",
        reference_type="booking",
        reference_id=booking_id,
        description="Points refunded for cancelled booking",
    )


async def cancel_unpaid_booking(db: AsyncSession, booking_id: str, user_id: str, reason: Optional[str] = None) -> Booking:
    """Cancel a booking before any funds are escrowed.

    Refused while an unexpired payment authorization is outstanding, since the
    customer could still submit it on-chain.
    """
    booking = await get_booking(db, booking_id)
    if user_id not in (booking.customer_id, booking.provider_id):
        raise BookingNotFound("Booking not found.", booking_id=booking_id)
    if booking.status in CLOSED_STATUSES:
        return booking
    if booking.status not in ("pending", "pending_payment"):
        raise InvalidBookingState(
            "Paid bookings need a signed cancellation authorization.", status=booking.status
        )

    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(BookingAuthorization).where(
            BookingAuthorization.booking_id == booking.id,
            BookingAuthorization.kind == "booking",
            BookingAuthorization.consumed_at.is_(None),
        )
    )
    for authorization in result.scalars().all():
        if _as_aware(authorization.expires_at) >= now:
            raise InvalidBookingState(
                "A payment authorization is still valid; retry after it expires.",
                retry_after=_as_aware(authorization.expires_at).isoformat(),
            )

    booking.status = "cancelled"
    booking.cancelled_at = now
    booking.cancelled_by = user_id
    booking.cancellation_reason = reason
    await db.commit()
    logger.info("Unpaid booking %s cancelled by %s", booking_id, user_id)
    return booking


async def expire_stale_bookings(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Cancel pending-payment bookings whose every authorization has expired unused."""
    current = now or datetime.now(timezone.utc)
    result = await db.execute(select(Booking).where(Booking.status == "pending_payment"))
    expired = 0
    for booking in result.scalars().all():
        auth_result = await db.execute(
            select(BookingAuthorization).where(
                BookingAuthorization.booking_id == booking.id,
                BookingAuthorization.kind == "booking",
            )
        )
        authorizations = auth_result.scalars().all()
        if authorizations and all(
            item.consumed_at is None and _as_aware(item.expires_at) < current for item in authorizations
        ):
            booking.status = "cancelled"
            booking.cancelled_at = current
            booking.cancellation_reason = "Payment authorization expired"
            expired += 1
    if expired:
        await db.commit()
    return expired
