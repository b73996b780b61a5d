"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from services.errors import SigningUnavailable
from services.signer import get_signer

router = APIRouter()


def _signer_status() -> str:
    try:
        get_signer()
    except SigningUnavailable:
        return "missing"
    return "configured"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "signer": _signer_status(),
        "chain_id": settings.CONTRACT_CHAIN_ID,
    }

    try:
        from database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready only when bookings can be signed and webhooks authenticated."""
    missing = []
    if _signer_status() != "configured":
        missing.append("BACKEND_SIGNER_PRIVATE_KEY/CONTRACT_ADDRESS")
    if not settings.FUNDING_WEBHOOK_SECRET:
        missing.append("FUNDING_WEBHOOK_SECRET")
    if not settings.CHAIN_EVENTS_SECRET:
        missing.append("CHAIN_EVENTS_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
