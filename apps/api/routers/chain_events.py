"""Escrow contract event webhook.

An indexer posts each observed contract event here. Events are processed
idempotently: a replayed delivery returns the booking unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.booking import Booking
from routers.auth_scope import require_webhook_secret
from services.errors import BookingNotFound, SettlementError, SettlementValidationError
from services.settlement import (
    booking_to_dict,
    on_booking_cancelled,
    on_payment_confirmed,
    on_service_completed,
    record_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)

HANDLERS = {
    "BookingCreatedAndPaid": on_payment_confirmed,
    "ServiceCompleted": on_service_completed,
    "BookingCancelled": on_booking_cancelled,
}


class ChainEventRequest(BaseModel):
    event_type: Literal["BookingCreatedAndPaid", "ServiceCompleted", "BookingCancelled"]
    tx_hash: str = Field(min_length=1)
    booking_id: Optional[str] = None
    log_index: Optional[int] = None
    args: Dict[str, Any] = Field(default_factory=dict)


async def _resolve_booking_id(db: AsyncSession, request: ChainEventRequest) -> str:
    if request.booking_id:
        return request.booking_id
    blockchain_id = request.args.get("bookingId")
    if not blockchain_id:
        raise SettlementValidationError("Event must carry booking_id or args.bookingId.")
    result = await db.execute(select(Booking.id).where(Booking.blockchain_booking_id == str(blockchain_id).lower()))
    booking_id = result.scalar_one_or_none()
    if booking_id is None:
        raise BookingNotFound("No booking matches the on-chain booking id.", blockchain_booking_id=str(blockchain_id))
    return booking_id


@router.post("/events")
async def ingest_chain_event(
    request: ChainEventRequest,
    _secret: None = Depends(require_webhook_secret("CHAIN_EVENTS_SECRET")),
    db: AsyncSession = Depends(get_db),
):
    booking_id = await _resolve_booking_id(db, request)
    event_data = dict(request.args)
    if request.log_index is not None:
        event_data["logIndex"] = request.log_index

    handler = HANDLERS[request.event_type]
    try:
        booking = await handler(db, booking_id, request.tx_hash, event_data)
    except SettlementError as exc:
        await db.rollback()
        logger.error(
            "Chain event %s tx=%s booking=%s rejected: %s",
            request.event_type,
            request.tx_hash,
            booking_id,
            exc.message,
        )
        if exc.status_code < 500:
            await record_event(
                db,
                None,
                request.event_type,
                request.tx_hash,
                event_data,
                status="FAILED",
                error_message=exc.message,
            )
            try:
                await db.commit()
            except IntegrityError:
                # Already processed successfully under this tx hash.
                await db.rollback()
        raise

    return {"ok": True, "event_type": request.event_type, "booking": booking_to_dict(booking)}
