"""Booking settlement router."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.cancellation import create_cancellation_authorization
from services.errors import BookingNotFound
from services.settlement import (
    booking_to_dict,
    cancel_unpaid_booking,
    create_booking_settlement,
    get_booking,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class BookingSettlementRequest(BaseModel):
    service_id: str
    customer_id: Optional[str] = None
    original_amount: Optional[Decimal] = Field(default=None, ge=0)
    use_points: bool = True
    usdc_balance: Decimal = Field(ge=0)
    scheduled_at: Optional[datetime] = None


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


@router.post("/settlement")
async def create_settlement(
    request: BookingSettlementRequest,
    _rate_limit: None = Depends(rate_limit("booking_settlement", limit=30, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Plan the payment, sign the escrow authorization and open the booking."""
    customer_id = ensure_user_scope(auth.user_id, request.customer_id)
    result = await create_booking_settlement(
        db,
        service_id=request.service_id,
        customer_id=customer_id,
        original_amount=request.original_amount,
        use_points=request.use_points,
        usdc_balance_hint=request.usdc_balance,
        scheduled_at=request.scheduled_at,
    )
    return result.as_dict()


@router.get("/{booking_id}")
async def get_booking_detail(
    booking_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking(db, booking_id)
    if auth.user_id not in (booking.customer_id, booking.provider_id) and not auth.is_admin:
        raise BookingNotFound("Booking not found.", booking_id=booking_id)
    return booking_to_dict(booking)


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a booking that has not been paid on-chain."""
    booking = await cancel_unpaid_booking(db, booking_id, auth.user_id, reason=request.reason)
    return booking_to_dict(booking)


@router.post("/{booking_id}/cancellation-authorization")
async def request_cancellation_authorization(
    booking_id: str,
    request: CancelBookingRequest,
    _rate_limit: None = Depends(rate_limit("booking_cancellation", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Signed refund split the caller submits to the escrow contract."""
    signed, quote = await create_cancellation_authorization(db, booking_id, auth.user_id, reason=request.reason)
    payload = signed.as_dict()
    payload["booking_id"] = booking_id
    payload["refund"] = quote.as_dict()
    return payload
