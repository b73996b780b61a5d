"""Points balance, history and admin adjustment router."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.point_transaction import PointTransaction
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from services import points as ledger

router = APIRouter()
logger = logging.getLogger(__name__)


class AdminAdjustmentRequest(BaseModel):
    user_id: str
    amount: int = Field(description="Positive to credit, negative to debit.")
    reason: str = Field(min_length=3, max_length=500)
    reference_id: Optional[str] = None


def _transaction_to_dict(entry: PointTransaction) -> dict:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": int(entry.amount),
        "balance_after": int(entry.balance_after),
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _scoped_user(auth: AuthContext, user_id: Optional[str]) -> str:
    if user_id and auth.is_admin:
        return user_id
    return ensure_user_scope(auth.user_id, user_id)


@router.get("/balance")
async def points_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = _scoped_user(auth, user_id)
    account = await ledger.get_balance(db, scoped_user_id)
    payload = account.as_dict()
    payload["user_id"] = scoped_user_id
    return payload


@router.get("/history")
async def points_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = _scoped_user(auth, user_id)
    entries = await ledger.get_history(db, scoped_user_id, limit=limit, offset=offset)
    return {
        "user_id": scoped_user_id,
        "transactions": [_transaction_to_dict(entry) for entry in entries],
        "limit": limit,
        "offset": offset,
    }


@router.get("/audit")
async def points_audit(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Compare the cached balance with the folded transaction log."""
    scoped_user_id = _scoped_user(auth, user_id)
    audit = await ledger.verify_account(db, scoped_user_id)
    return audit.as_dict()


@router.post("/admin/adjust")
async def admin_adjust(
    request: AdminAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.amount == 0:
        raise HTTPException(status_code=422, detail="amount must be non-zero.")
    await ledger.ensure_user(db, request.user_id)

    reference_id = request.reference_id or str(uuid.uuid4())
    metadata = {"admin_user_id": admin.user_id}
    if request.amount > 0:
        result = await ledger.credit(
            db,
            request.user_id,
            request.amount,
            "admin_credit",
            reference_type="admin",
            reference_id=reference_id,
            description=request.reason,
            metadata=metadata,
        )
    else:
        result = await ledger.debit(
            db,
            request.user_id,
            -request.amount,
            "admin_debit",
            reference_type="admin",
            reference_id=reference_id,
            description=request.reason,
            metadata=metadata,
        )
    logger.info(
        "Admin points adjustment admin=%s user=%s amount=%s reference=%s",
        admin.user_id,
        request.user_id,
        request.amount,
        reference_id,
    )
    return {
        "ok": True,
        "user_id": request.user_id,
        "amount": request.amount,
        "balance": result.balance,
        "transaction_id": result.transaction_id,
        "reference_id": reference_id,
        "replayed": result.replayed,
    }
