"""Points ledger: cached balance plus append-only transaction log.

1 point = $0.01. Mutations update ``user_points`` and append one
``point_transactions`` row in the same database transaction. The cached row is
guarded by an optimistic ``version`` counter, and ``(type, reference_type,
reference_id)`` is unique so one funding or booking moves points at most once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.point_transaction import CREDIT_TYPES, DEBIT_TYPES, REFERENCE_TYPES, PointTransaction
from models.user import User
from models.user_points import UserPoints
from services.errors import (
    InsufficientPoints,
    InvalidAmount,
    LedgerUnavailable,
    LedgerValidationError,
    SettlementError,
    UserNotFound,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PointsAccount:
    user_id: str
    balance: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    updated_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "lifetime_earned": self.lifetime_earned,
            "lifetime_spent": self.lifetime_spent,
            "balance_usd": f"{self.balance / settings.POINTS_PER_DOLLAR:.2f}",
        }


@dataclass(frozen=True)
class LedgerResult:
    balance: int
    amount: int
    transaction_id: Optional[str]
    replayed: bool = False


@dataclass(frozen=True)
class LedgerAudit:
    user_id: str
    cached_balance: int
    cached_lifetime_earned: int
    cached_lifetime_spent: int
    derived_earned: int
    derived_spent: int
    transaction_count: int

    @property
    def derived_balance(self) -> int:
        return self.derived_earned - self.derived_spent

    @property
    def consistent(self) -> bool:
        return (
            self.cached_balance == self.derived_balance
            and self.cached_lifetime_earned == self.derived_earned
            and self.cached_lifetime_spent == self.derived_spent
            and self.cached_balance == self.cached_lifetime_earned - self.cached_lifetime_spent
            and self.cached_balance >= 0
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "cached_balance": self.cached_balance,
            "derived_balance": self.derived_balance,
            "lifetime_earned": self.cached_lifetime_earned,
            "lifetime_spent": self.cached_lifetime_spent,
            "transaction_count": self.transaction_count,
            "consistent": self.consistent,
        }


async def get_balance(db: AsyncSession, user_id: str) -> PointsAccount:
    """Return the user's account, or zero-valued defaults when no row exists yet."""
    result = await db.execute(select(UserPoints).where(UserPoints.user_id == user_id))
    account = result.scalar_one_or_none()
    if account is None:
        return PointsAccount(user_id=user_id)
    return PointsAccount(
        user_id=user_id,
        balance=int(account.balance),
        lifetime_earned=int(account.lifetime_earned),
        lifetime_spent=int(account.lifetime_spent),
        updated_at=account.updated_at,
    )


async def ensure_user(db: AsyncSession, user_id: str) -> None:
    result = await db.execute(select(User.id).where(User.id == user_id))
    if result.scalar_one_or_none() is None:
        raise UserNotFound("User not found.", user_id=user_id)


async def get_history(
    db: AsyncSession, user_id: str, limit: int = 50, offset: int = 0
) -> List[PointTransaction]:
    result = await db.execute(
        select(PointTransaction)
        .where(PointTransaction.user_id == user_id)
        .order_by(PointTransaction.created_at.desc())
        .limit(max(min(int(limit), 200), 1))
        .offset(max(int(offset), 0))
    )
    return list(result.scalars().all())


def _validate(amount: int, tx_type: str, reference_type: Optional[str], allowed_types: tuple) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount("Points amount must be a positive integer.", amount=str(amount))
    if tx_type not in allowed_types:
        raise LedgerValidationError(f"Unsupported transaction type for this operation: {tx_type}.", type=tx_type)
    if reference_type is not None and reference_type not in REFERENCE_TYPES:
        raise LedgerValidationError(f"Unknown reference type: {reference_type}.", reference_type=reference_type)


async def _find_reference(
    db: AsyncSession, tx_type: str, reference_type: Optional[str], reference_id: Optional[str]
) -> Optional[PointTransaction]:
    if reference_type is None or reference_id is None:
        return None
    result = await db.execute(
        select(PointTransaction).where(
            PointTransaction.type == tx_type,
            PointTransaction.reference_type == reference_type,
            PointTransaction.reference_id == reference_id,
        )
    )
    return result.scalar_one_or_none()


async def _load_account(db: AsyncSession, user_id: str, create: bool) -> Optional[UserPoints]:
    result = await db.execute(
        select(UserPoints).where(UserPoints.user_id == user_id).with_for_update()
    )
    account = result.scalar_one_or_none()
    if account is None and create:
        account = UserPoints(
            id=str(uuid.uuid4()),
            user_id=user_id,
            balance=0,
            lifetime_earned=0,
            lifetime_spent=0,
        )
        db.add(account)
        await db.flush()
    return account


async def _apply(
    db: AsyncSession,
    user_id: str,
    amount: int,
    tx_type: str,
    direction: int,
    reference_type: Optional[str],
    reference_id: Optional[str],
    description: Optional[str],
    metadata: Optional[Dict[str, Any]],
) -> LedgerResult:
    existing = await _find_reference(db, tx_type, reference_type, reference_id)
    if existing is not None:
        if existing.user_id != user_id:
            raise LedgerValidationError("Reference already applied to a different user.", reference_id=reference_id)
        current = await get_balance(db, user_id)
        logger.info(
            "points_%s replay user=%s reference=%s:%s", tx_type, user_id, reference_type, reference_id
        )
        return LedgerResult(balance=current.balance, amount=int(existing.amount), transaction_id=existing.id, replayed=True)

    account = await _load_account(db, user_id, create=direction > 0)
    if direction < 0:
        available = int(account.balance) if account is not None else 0
        if account is None or amount > available:
            raise InsufficientPoints(required=amount, available=available)
        account.balance = available - amount
        account.lifetime_spent = int(account.lifetime_spent) + amount
    else:
        account.balance = int(account.balance) + amount
        account.lifetime_earned = int(account.lifetime_earned) + amount

    entry = PointTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=tx_type,
        amount=amount,
        balance_after=int(account.balance),
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        metadata_json=metadata,
    )
    db.add(entry)
    await db.flush()
    return LedgerResult(balance=int(account.balance), amount=amount, transaction_id=entry.id)


async def apply_credit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    tx_type: str = "funding_credit",
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Stage a credit in the current transaction without committing."""
    _validate(amount, tx_type, reference_type, CREDIT_TYPES)
    return await _apply(db, user_id, amount, tx_type, 1, reference_type, reference_id, description, metadata)


async def apply_debit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    tx_type: str = "booking_debit",
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Stage a debit in the current transaction without committing."""
    _validate(amount, tx_type, reference_type, DEBIT_TYPES)
    return await _apply(db, user_id, amount, tx_type, -1, reference_type, reference_id, description, metadata)


async def apply_with_retry(db: AsyncSession, operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation`` and commit, retrying write conflicts with a fresh read.

    Business and validation errors roll back and propagate immediately. Lost
    races (stale version, duplicate insert) and transient database errors are
    retried with exponential backoff up to ``LEDGER_MAX_RETRIES`` times.
    """
    max_attempts = max(int(settings.LEDGER_MAX_RETRIES), 1)
    base_delay = max(float(settings.LEDGER_RETRY_BASE_DELAY_SECONDS), 0.0)
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation()
            await db.commit()
            return result
        except SettlementError:
            await db.rollback()
            raise
        except (StaleDataError, IntegrityError, OperationalError) as exc:
            await db.rollback()
            last_error = exc
            logger.warning(
                "Ledger write conflict (attempt %s/%s): %s", attempt, max_attempts, type(exc).__name__
            )
        if attempt < max_attempts:
            await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

    raise LedgerUnavailable("Points ledger is busy. Retry the request.") from last_error


async def credit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    tx_type: str = "funding_credit",
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Credit points and commit. Never fails on business grounds."""
    result = await apply_with_retry(
        db,
        lambda: apply_credit(
            db,
            user_id,
            amount,
            tx_type,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            metadata=metadata,
        ),
    )
    logger.info("points_credit user=%s type=%s amount=%s balance=%s", user_id, tx_type, amount, result.balance)
    return result


async def debit(
    db: AsyncSession,
    user_id: str,
    amount: int,
    tx_type: str = "booking_debit",
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Debit points and commit; raises ``InsufficientPoints`` when the balance is too low."""
    result = await apply_with_retry(
        db,
        lambda: apply_debit(
            db,
            user_id,
            amount,
            tx_type,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            metadata=metadata,
        ),
    )
    logger.info("points_debit user=%s type=%s amount=%s balance=%s", user_id, tx_type, amount, result.balance)
    return result


async def verify_account(db: AsyncSession, user_id: str) -> LedgerAudit:
    """Fold the transaction log and compare it with the cached balance row."""
    totals = await db.execute(
        select(PointTransaction.type, func.coalesce(func.sum(PointTransaction.amount), 0), func.count())
        .where(PointTransaction.user_id == user_id)
        .group_by(PointTransaction.type)
    )
    earned = 0
    spent = 0
    count = 0
    for tx_type, amount, rows in totals.all():
        count += int(rows)
        if tx_type in CREDIT_TYPES:
            earned += int(amount)
        elif tx_type in DEBIT_TYPES:
            spent += int(amount)

    account = await get_balance(db, user_id)
    audit = LedgerAudit(
        user_id=user_id,
        cached_balance=account.balance,
        cached_lifetime_earned=account.lifetime_earned,
        cached_lifetime_spent=account.lifetime_spent,
        derived_earned=earned,
        derived_spent=spent,
        transaction_count=count,
    )
    if not audit.consistent:
        logger.error("Points ledger mismatch for user %s: %s", user_id, audit.as_dict())
    return audit
