"""Funding completion: convert on-ramp fees into points."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.funding_record import FundingRecord
from services import points as ledger
from services.errors import BusinessRuleError, InvalidAmount, SettlementValidationError
from services.planner import CENT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingResult:
    funding_record_id: str
    points_credited: int
    balance: int
    replayed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "funding_record_id": self.funding_record_id,
            "points_credited": self.points_credited,
            "balance": self.balance,
            "replayed": self.replayed,
        }


def _amount(value: Any, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except ArithmeticError as exc:
        raise InvalidAmount(f"{field} is not a valid amount.", field=field) from exc
    if not amount.is_finite() or amount < 0:
        raise InvalidAmount(f"{field} must be a non-negative amount.", field=field)
    return amount


def fee_to_points(requested_amount: Any, received_amount: Any) -> int:
    """Points for the fee withheld on a top-up: 1 point per cent, half-up."""
    requested = _amount(requested_amount, "requested_amount")
    received = _amount(received_amount, "received_amount")
    fee = requested - received
    if fee < 0:
        raise InvalidAmount(
            "received_amount cannot exceed requested_amount.",
            requested_amount=requested,
            received_amount=received,
        )
    return int((fee * settings.POINTS_PER_DOLLAR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def _find_record(db: AsyncSession, tx_hash: str) -> Optional[FundingRecord]:
    result = await db.execute(select(FundingRecord).where(FundingRecord.transaction_hash == tx_hash))
    return result.scalar_one_or_none()


async def process_funding_completion(
    db: AsyncSession,
    user_id: str,
    requested_amount: Any,
    received_amount: Any,
    tx_hash: str,
    provider: Optional[str] = None,
    payment_method: str = "credit_card",
    external_reference: Optional[str] = None,
) -> FundingResult:
    """Record a completed top-up and credit its fee as points, once per transaction hash.

    The funding record and the points credit commit together, so a crash can
    never leave a completed record without its points.
    """
    if not tx_hash:
        raise SettlementValidationError("Transaction hash is required.")
    requested = _amount(requested_amount, "requested_amount")
    received = _amount(received_amount, "received_amount")
    points_credited = fee_to_points(requested, received)
    await ledger.ensure_user(db, user_id)

    async def _operation() -> FundingResult:
        record = await _find_record(db, tx_hash)
        if record is not None:
            if record.user_id != user_id:
                raise SettlementValidationError("Transaction belongs to a different user.", tx_hash=tx_hash)
            if record.status == "completed":
                account = await ledger.get_balance(db, user_id)
                return FundingResult(record.id, int(record.points_credited), account.balance, replayed=True)
            if record.status == "failed":
                raise BusinessRuleError("Funding was already marked as failed.", tx_hash=tx_hash)
        else:
            record = FundingRecord(id=str(uuid.uuid4()), user_id=user_id, transaction_hash=tx_hash)
            db.add(record)

        record.requested_amount = requested.quantize(CENT)
        record.received_amount = received.quantize(CENT)
        record.fee_amount = (requested - received).quantize(CENT, rounding=ROUND_HALF_UP)
        record.points_credited = points_credited
        record.payment_method = payment_method
        record.payment_provider = provider
        record.external_reference = external_reference
        record.status = "completed"
        record.completed_at = datetime.now(timezone.utc)
        await db.flush()

        if points_credited > 0:
            entry = await ledger.apply_credit(
                db,
                user_id,
                points_credited,
                "funding_credit",
                reference_type="funding",
                reference_id=record.id,
                description=f"Funding fee credit for ${requested.quantize(CENT)} top-up",
                metadata={"tx_hash": tx_hash, "provider": provider},
            )
            balance = entry.balance
        else:
            balance = (await ledger.get_balance(db, user_id)).balance
        return FundingResult(record.id, points_credited, balance)

    result = await ledger.apply_with_retry(db, _operation)
    if result.replayed:
        logger.info("Funding replay ignored tx=%s user=%s", tx_hash, user_id)
    else:
        logger.info(
            "Funding completed tx=%s user=%s points=%s balance=%s",
            tx_hash,
            user_id,
            result.points_credited,
            result.balance,
        )
    return result


async def mark_funding_failed(
    db: AsyncSession,
    user_id: str,
    requested_amount: Any,
    tx_hash: str,
    provider: Optional[str] = None,
    payment_method: str = "credit_card",
    external_reference: Optional[str] = None,
) -> FundingRecord:
    """Record a failed top-up. No points are credited."""
    if not tx_hash:
        raise SettlementValidationError("Transaction hash is required.")
    requested = _amount(requested_amount, "requested_amount")
    await ledger.ensure_user(db, user_id)

    record = await _find_record(db, tx_hash)
    if record is not None:
        if record.status == "completed":
            raise BusinessRuleError("Funding already completed.", tx_hash=tx_hash)
        if record.user_id != user_id:
            raise SettlementValidationError("Transaction belongs to a different user.", tx_hash=tx_hash)
    else:
        record = FundingRecord(id=str(uuid.uuid4()), user_id=user_id, transaction_hash=tx_hash)
        db.add(record)

    record.requested_amount = requested.quantize(CENT)
    record.received_amount = Decimal("0.00")
    record.fee_amount = Decimal("0.00")
    record.points_credited = 0
    record.payment_method = payment_method
    record.payment_provider = provider
    record.external_reference = external_reference
    record.status = "failed"
    await db.commit()
    logger.warning("Funding failed tx=%s user=%s provider=%s", tx_hash, user_id, provider)
    return record
