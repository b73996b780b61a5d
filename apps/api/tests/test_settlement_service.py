import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import create_service, create_user
from models.points_reconciliation import PointsReconciliation
from services import points as ledger
from services import settlement_queue
from services.cancellation import create_cancellation_authorization, refund_rate_bps, split_cancellation
from services.errors import InsufficientBalance, InvalidBookingState
from services.settlement import (
    cancel_unpaid_booking,
    create_booking_settlement,
    expire_stale_bookings,
    get_booking,
    on_booking_cancelled,
    on_payment_confirmed,
)


async def _seed(db, points=0):
    await create_user(db, "alice", wallet_seed=1)
    await create_user(db, "bob", wallet_seed=2)
    service = await create_service(db, "bob")
    if points:
        await ledger.credit(db, "alice", points, "admin_credit", reference_type="admin", reference_id="seed")
    return service


@pytest.mark.asyncio
async def test_expired_authorization_allows_cancelling_unpaid_booking(db):
    service = await _seed(db)
    an_hour_ago = int(time.time()) - 3600
    result = await create_booking_settlement(
        db, service.id, "alice", Decimal("20.00"), True, Decimal("20.00"), now=an_hour_ago
    )

    booking = await cancel_unpaid_booking(db, result.booking.id, "alice", reason="Changed plans")
    assert booking.status == "cancelled"
    assert booking.cancelled_by == "alice"

    with pytest.raises(InvalidBookingState):
        await on_payment_confirmed(db, booking.id, "0xlate", {"amount": "20000000"})


@pytest.mark.asyncio
async def test_stale_pending_bookings_are_expired(db):
    service = await _seed(db)
    stale = await create_booking_settlement(
        db, service.id, "alice", None, True, Decimal("20.00"), now=int(time.time()) - 3600
    )
    fresh = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("20.00"))

    assert await expire_stale_bookings(db) == 1
    assert (await get_booking(db, stale.booking.id)).status == "cancelled"
    assert (await get_booking(db, fresh.booking.id)).status == "pending_payment"


@pytest.mark.asyncio
async def test_failed_points_debit_is_queued_for_reconciliation(db, session_maker, monkeypatch, no_redis_enqueue):
    service = await _seed(db, points=20)
    result = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    assert result.plan.points_to_use == 20

    # Points spent elsewhere between signing and on-chain confirmation.
    await ledger.debit(db, "alice", 15, "admin_debit", reference_type="admin", reference_id="spend")

    booking = await on_payment_confirmed(
        db, result.booking.id, "0xpay", {"amount": "19800000", "nonce": str(result.authorization.nonce)}
    )
    assert booking.status == "paid"
    assert (await ledger.get_balance(db, "alice")).balance == 5

    item = (
        await db.execute(select(PointsReconciliation).where(PointsReconciliation.booking_id == booking.id))
    ).scalar_one()
    assert item.status == "pending"
    assert item.points == 20
    assert no_redis_enqueue == [item.id]

    monkeypatch.setattr(settlement_queue, "async_session_maker", session_maker)
    assert await settlement_queue.process_points_reconciliation_async(item.id) == "manual_review"

    await db.refresh(item)
    assert item.status == "manual_review"
    assert item.attempts == 1

    await ledger.credit(db, "alice", 15, "admin_credit", reference_type="admin", reference_id="restore")
    item.status = "pending"
    await db.commit()
    assert await settlement_queue.process_points_reconciliation_async(item.id) == "resolved"
    db.expire_all()
    assert (await ledger.get_balance(db, "alice")).balance == 0


@pytest.mark.asyncio
async def test_cancelling_with_pending_reconciliation_returns_nothing(db):
    service = await _seed(db, points=20)
    result = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    await ledger.debit(db, "alice", 20, "admin_debit", reference_type="admin", reference_id="spend")
    await on_payment_confirmed(db, result.booking.id, "0xpay", {"nonce": str(result.authorization.nonce)})

    booking = await on_booking_cancelled(db, result.booking.id, "0xcancel", {"customerAmount": "19800000"})
    assert booking.status == "refunded"
    assert (await ledger.get_balance(db, "alice")).balance == 0

    item = (
        await db.execute(select(PointsReconciliation).where(PointsReconciliation.booking_id == booking.id))
    ).scalar_one()
    assert item.status == "cancelled"


def test_customer_refund_policy_by_notice():
    assert refund_rate_bps("customer", 72) == 10000
    assert refund_rate_bps("customer", 48) == 10000
    assert refund_rate_bps("customer", 30) == 7500
    assert refund_rate_bps("customer", 2) == 5000
    assert refund_rate_bps("customer", -1) == 5000
    assert refund_rate_bps("customer", None) == 10000
    assert refund_rate_bps("provider", 1) == 10000


@pytest.mark.parametrize("amount", [19_800_000, 20_000_000, 1, 333_333])
@pytest.mark.parametrize("refund_rate", [10000, 7500, 5000])
@pytest.mark.parametrize("rates", [(1000, 0), (500, 500)])
def test_cancellation_split_sums_to_escrow(amount, refund_rate, rates):
    quote = split_cancellation(amount, refund_rate, *rates)
    assert quote.customer_amount + quote.distribution.total == amount
    assert quote.distribution.platform_amount >= 0


def test_late_customer_cancellation_split():
    quote = split_cancellation(20_000_000, 5000, 1000, 0)
    assert quote.customer_amount == 10_000_000
    assert quote.distribution.provider_amount == 9_000_000
    assert quote.distribution.platform_amount == 1_000_000


@pytest.mark.asyncio
async def test_cancellation_authorization_requires_paid_booking(db):
    service = await _seed(db)
    result = await create_booking_settlement(
        db,
        service.id,
        "alice",
        None,
        True,
        Decimal("20.00"),
        scheduled_at=datetime.now(timezone.utc) + timedelta(hours=30),
    )
    with pytest.raises(InvalidBookingState):
        await create_cancellation_authorization(db, result.booking.id, "alice")

    await on_payment_confirmed(db, result.booking.id, "0xpay", {"nonce": str(result.authorization.nonce)})
    signed, quote = await create_cancellation_authorization(db, result.booking.id, "alice", reason="Sick")
    assert quote.refund_rate == 7500
    assert quote.customer_amount == 15_000_000
    assert signed.authorization["reason"] == "Sick"

    provider_signed, provider_quote = await create_cancellation_authorization(db, result.booking.id, "bob")
    assert provider_quote.refund_rate == 10000
    assert provider_signed.nonce != signed.nonce


@pytest.mark.asyncio
async def test_points_held_by_open_booking_cannot_fund_another(db):
    service = await _seed(db, points=20)
    first = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    assert first.plan.points_to_use == 20

    with pytest.raises(InsufficientBalance) as exc_info:
        await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    assert exc_info.value.detail["points_available"] == 0

    usdc_only = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("20.00"))
    assert usdc_only.plan.points_to_use == 0

    await on_payment_confirmed(db, first.booking.id, "0xpay", {"nonce": str(first.authorization.nonce)})
    assert (await ledger.get_balance(db, "alice")).balance == 0
    assert (await ledger.get_balance(db, "alice")).lifetime_spent == 20


@pytest.mark.asyncio
async def test_points_owed_by_unreconciled_booking_stay_reserved(db, no_redis_enqueue):
    service = await _seed(db, points=20)
    first = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    await ledger.debit(db, "alice", 15, "admin_debit", reference_type="admin", reference_id="spend")
    await on_payment_confirmed(db, first.booking.id, "0xpay", {"nonce": str(first.authorization.nonce)})
    await ledger.credit(db, "alice", 30, "admin_credit", reference_type="admin", reference_id="top-up")

    second = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.85"))
    assert second.plan.points_to_use == 15


@pytest.mark.asyncio
async def test_expired_booking_releases_its_points(db):
    service = await _seed(db, points=20)
    await create_booking_settlement(
        db, service.id, "alice", None, True, Decimal("19.80"), now=int(time.time()) - 3600
    )
    assert await expire_stale_bookings(db) == 1

    retry = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    assert retry.plan.points_to_use == 20


@pytest.mark.asyncio
async def test_payment_landing_after_expiry_sweep_reinstates_booking(db):
    service = await _seed(db, points=20)
    result = await create_booking_settlement(db, service.id, "alice", None, True, Decimal("19.80"))
    expiry = datetime.fromtimestamp(result.authorization.expiry, tz=timezone.utc)
    assert await expire_stale_bookings(db, now=expiry + timedelta(seconds=1)) == 1
    assert (await get_booking(db, result.booking.id)).status == "cancelled"

    booking = await on_payment_confirmed(
        db, result.booking.id, "0xlate", {"amount": "19800000", "nonce": str(result.authorization.nonce)}
    )
    assert booking.status == "paid"
    assert booking.cancelled_at is None
    assert booking.cancellation_reason is None
    assert booking.blockchain_tx_hash == "0xlate"
    assert (await ledger.get_balance(db, "alice")).balance == 0


@pytest.mark.asyncio
async def test_payment_landing_after_unpaid_cancel_reinstates_booking(db):
    service = await _seed(db)
    result = await create_booking_settlement(
        db, service.id, "alice", Decimal("20.00"), True, Decimal("20.00"), now=int(time.time()) - 3600
    )
    await cancel_unpaid_booking(db, result.booking.id, "alice", reason="Changed plans")

    booking = await on_payment_confirmed(
        db, result.booking.id, "0xlate", {"amount": "20000000", "nonce": str(result.authorization.nonce)}
    )
    assert booking.status == "paid"
    assert booking.cancelled_by is None


@pytest.mark.asyncio
async def test_partial_cash_refund_returns_every_point(db):
    service = await _seed(db, points=20)
    result = await create_booking_settlement(
        db,
        service.id,
        "alice",
        None,
        True,
        Decimal("19.80"),
        scheduled_at=datetime.now(timezone.utc) + timedelta(hours=2),
    )
    await on_payment_confirmed(db, result.booking.id, "0xpay", {"nonce": str(result.authorization.nonce)})
    assert (await ledger.get_balance(db, "alice")).balance == 0

    signed, quote = await create_cancellation_authorization(db, result.booking.id, "alice")
    assert quote.refund_rate == 5000
    booking = await on_booking_cancelled(
        db, result.booking.id, "0xcancel", {"customerAmount": str(quote.customer_amount)}
    )
    assert booking.status == "refunded"
    assert booking.refund_amount == 9_900_000
    assert (await ledger.get_balance(db, "alice")).balance == 20
