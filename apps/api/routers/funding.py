"""Funding webhook router for the fiat-to-USDC on-ramp."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_webhook_secret
from services.funding import mark_funding_failed, process_funding_completion

router = APIRouter()


class FundingWebhookRequest(BaseModel):
    user_id: str
    status: Literal["completed", "failed"] = "completed"
    requested_amount: Decimal = Field(ge=0)
    received_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tx_hash: str = Field(min_length=1)
    provider: Optional[str] = None
    payment_method: str = "credit_card"
    external_reference: Optional[str] = None


@router.post("/webhook")
async def funding_webhook(
    request: FundingWebhookRequest,
    _secret: None = Depends(require_webhook_secret("FUNDING_WEBHOOK_SECRET")),
    db: AsyncSession = Depends(get_db),
):
    if request.status == "failed":
        record = await mark_funding_failed(
            db,
            request.user_id,
            request.requested_amount,
            request.tx_hash,
            provider=request.provider,
            payment_method=request.payment_method,
            external_reference=request.external_reference,
        )
        return {"ok": True, "funding_record_id": record.id, "status": record.status, "points_credited": 0}

    result = await process_funding_completion(
        db,
        request.user_id,
        request.requested_amount,
        request.received_amount,
        request.tx_hash,
        provider=request.provider,
        payment_method=request.payment_method,
        external_reference=request.external_reference,
    )
    payload = result.as_dict()
    payload["ok"] = True
    payload["status"] = "completed"
    return payload
