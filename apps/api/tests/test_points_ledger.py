from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from conftest import create_user
from models.funding_record import FundingRecord
from models.point_transaction import PointTransaction
from services import points as ledger
from services.errors import (
    BusinessRuleError,
    InsufficientPoints,
    InvalidAmount,
    LedgerUnavailable,
    LedgerValidationError,
    UserNotFound,
)
from services.funding import fee_to_points, mark_funding_failed, process_funding_completion


async def _transaction_count(db, user_id):
    result = await db.execute(select(func.count()).select_from(PointTransaction).where(PointTransaction.user_id == user_id))
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_funding_fee_becomes_points(db):
    await create_user(db, "alice", wallet_seed=1)

    result = await process_funding_completion(
        db, "alice", Decimal("100.00"), Decimal("98.50"), "0xfund1", provider="coinbase"
    )

    assert result.points_credited == 150
    assert result.balance == 150
    assert result.replayed is False
    account = await ledger.get_balance(db, "alice")
    assert account.balance == 150
    assert account.lifetime_earned == 150
    assert account.as_dict()["balance_usd"] == "1.50"

    record = (await db.execute(select(FundingRecord).where(FundingRecord.transaction_hash == "0xfund1"))).scalar_one()
    assert record.status == "completed"
    assert Decimal(str(record.fee_amount)) == Decimal("1.50")


@pytest.mark.asyncio
async def test_funding_is_idempotent_per_transaction_hash(db):
    await create_user(db, "alice", wallet_seed=1)

    first = await process_funding_completion(db, "alice", Decimal("20.00"), Decimal("19.80"), "0xfund2")
    second = await process_funding_completion(db, "alice", Decimal("20.00"), Decimal("19.80"), "0xfund2")

    assert first.points_credited == 20
    assert second.replayed is True
    assert second.funding_record_id == first.funding_record_id
    assert (await ledger.get_balance(db, "alice")).balance == 20
    assert await _transaction_count(db, "alice") == 1


@pytest.mark.asyncio
async def test_funding_without_fee_records_no_points(db):
    await create_user(db, "alice", wallet_seed=1)
    result = await process_funding_completion(db, "alice", Decimal("50.00"), Decimal("50.00"), "0xfund3")
    assert result.points_credited == 0
    assert result.balance == 0
    assert await _transaction_count(db, "alice") == 0


@pytest.mark.asyncio
async def test_failed_funding_blocks_later_completion(db):
    await create_user(db, "alice", wallet_seed=1)
    record = await mark_funding_failed(db, "alice", Decimal("20.00"), "0xfund4", provider="stripe")
    assert record.status == "failed"
    assert record.points_credited == 0

    with pytest.raises(BusinessRuleError):
        await process_funding_completion(db, "alice", Decimal("20.00"), Decimal("19.80"), "0xfund4")
    assert (await ledger.get_balance(db, "alice")).balance == 0


def test_fee_to_points_rounds_half_up_and_rejects_negative_fee():
    assert fee_to_points(Decimal("100.00"), Decimal("98.50")) == 150
    assert fee_to_points(Decimal("10.00"), Decimal("9.995")) == 1
    assert fee_to_points(Decimal("10.00"), Decimal("9.996")) == 0
    with pytest.raises(InvalidAmount):
        fee_to_points(Decimal("10.00"), Decimal("10.01"))


@pytest.mark.asyncio
async def test_overdraw_leaves_ledger_untouched(db):
    await create_user(db, "alice", wallet_seed=1)
    await ledger.credit(db, "alice", 30, reference_type="admin", reference_id="seed", tx_type="admin_credit")

    with pytest.raises(InsufficientPoints) as exc_info:
        await ledger.debit(db, "alice", 31, reference_type="booking", reference_id="booking-x")

    assert exc_info.value.detail["required"] == 31
    assert exc_info.value.detail["available"] == 30
    account = await ledger.get_balance(db, "alice")
    assert account.balance == 30
    assert account.lifetime_spent == 0
    assert await _transaction_count(db, "alice") == 1


@pytest.mark.asyncio
async def test_debit_without_account_is_insufficient(db):
    await create_user(db, "bob", wallet_seed=2)
    with pytest.raises(InsufficientPoints):
        await ledger.debit(db, "bob", 1, reference_type="booking", reference_id="booking-y")
    assert (await ledger.get_balance(db, "bob")).balance == 0


@pytest.mark.asyncio
async def test_debit_is_idempotent_per_booking(db):
    await create_user(db, "alice", wallet_seed=1)
    await ledger.credit(db, "alice", 100, "admin_credit", reference_type="admin", reference_id="seed")

    first = await ledger.debit(db, "alice", 40, reference_type="booking", reference_id="booking-1")
    second = await ledger.debit(db, "alice", 40, reference_type="booking", reference_id="booking-1")

    assert first.balance == 60
    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert (await ledger.get_balance(db, "alice")).balance == 60


@pytest.mark.asyncio
async def test_ledger_rejects_invalid_operations(db):
    await create_user(db, "alice", wallet_seed=1)
    with pytest.raises(InvalidAmount):
        await ledger.credit(db, "alice", 0)
    with pytest.raises(InvalidAmount):
        await ledger.credit(db, "alice", -5)
    with pytest.raises(LedgerValidationError):
        await ledger.credit(db, "alice", 5, "booking_debit")
    with pytest.raises(LedgerValidationError):
        await ledger.debit(db, "alice", 5, "funding_credit")


@pytest.mark.asyncio
async def test_history_and_audit_reconcile_with_balance(db):
    await create_user(db, "alice", wallet_seed=1)
    await process_funding_completion(db, "alice", Decimal("100.00"), Decimal("98.50"), "0xfund5")
    await ledger.debit(db, "alice", 20, reference_type="booking", reference_id="booking-1")
    await ledger.credit(db, "alice", 20, "refund_credit", reference_type="booking", reference_id="booking-1")
    await ledger.debit(db, "alice", 100, "admin_debit", reference_type="admin", reference_id="adj-1")

    history = await ledger.get_history(db, "alice")
    assert len(history) == 4
    assert sorted(entry.type for entry in history) == ["admin_debit", "booking_debit", "funding_credit", "refund_credit"]

    audit = await ledger.verify_account(db, "alice")
    assert audit.consistent is True
    assert audit.derived_balance == 50
    assert audit.cached_balance == 50
    assert audit.cached_lifetime_earned == 170
    assert audit.cached_lifetime_spent == 120
    assert audit.transaction_count == 4


@pytest.mark.asyncio
async def test_stale_version_is_retried_against_a_fresh_read(db, monkeypatch):
    await create_user(db, "alice", wallet_seed=1)
    await ledger.credit(db, "alice", 10, "admin_credit", reference_type="admin", reference_id="seed")

    real_flush = db.flush
    flushes = []

    async def racing_flush(*args, **kwargs):
        flushes.append(1)
        if len(flushes) == 1:
            raise StaleDataError("UPDATE statement on table 'user_points' expected to update 1 row(s); 0 were matched.")
        return await real_flush(*args, **kwargs)

    monkeypatch.setattr(db, "flush", racing_flush)
    result = await ledger.debit(db, "alice", 4, "admin_debit", reference_type="admin", reference_id="adj-1")

    assert len(flushes) == 2
    assert result.balance == 6
    assert result.replayed is False
    assert await _transaction_count(db, "alice") == 2
    audit = await ledger.verify_account(db, "alice")
    assert audit.consistent is True
    assert audit.cached_balance == 6


@pytest.mark.asyncio
async def test_ledger_gives_up_after_max_retries(db, monkeypatch):
    await create_user(db, "alice", wallet_seed=1)
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 3)
    flushes = []

    async def locked_flush(*args, **kwargs):
        flushes.append(1)
        raise OperationalError("UPDATE user_points", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "flush", locked_flush)
    with pytest.raises(LedgerUnavailable) as exc_info:
        await ledger.credit(db, "alice", 5, "admin_credit", reference_type="admin", reference_id="adj-2")

    assert exc_info.value.status_code == 503
    assert len(flushes) == 3
    assert (await ledger.get_balance(db, "alice")).balance == 0
    assert await _transaction_count(db, "alice") == 0


@pytest.mark.asyncio
async def test_unknown_user_is_rejected_before_touching_the_ledger(db):
    with pytest.raises(UserNotFound):
        await ledger.ensure_user(db, "nobody")
    with pytest.raises(UserNotFound):
        await process_funding_completion(db, "nobody", Decimal("10.00"), Decimal("9.90"), "0xfund6")
