"""
BookMe Settlement - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings, validate_signer_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    bookings,
    points,
    funding,
    chain_events,
)
from services.errors import SettlementError
from services.settlement import expire_stale_bookings
from services.settlement_queue import requeue_open_reconciliations

logger = logging.getLogger(__name__)


async def _sweep_stale_bookings() -> int:
    async with async_session_maker() as db:
        return await expire_stale_bookings(db)


async def _periodic_stale_booking_sweep() -> None:
    interval_minutes = max(int(settings.STALE_BOOKING_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await _sweep_stale_bookings()
            if expired:
                print(f"⌛ Expired {expired} unpaid bookings with stale authorizations.")
        except Exception as exc:
            print(f"⚠️ Stale booking sweep failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting BookMe Settlement API...")
    validate_security_settings()
    validate_signer_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        requeued = await requeue_open_reconciliations()
        if requeued:
            print(f"♻️ Re-queued {requeued} pending points reconciliations after startup.")
    except Exception as exc:
        print(f"⚠️ Points reconciliation recovery skipped: {exc}")
    try:
        expired = await _sweep_stale_bookings()
        if expired:
            print(f"⌛ Expired {expired} unpaid bookings with stale authorizations.")
    except Exception as exc:
        print(f"⚠️ Stale booking sweep skipped: {exc}")
    sweep_task = None
    if int(settings.STALE_BOOKING_SWEEP_INTERVAL_MINUTES) > 0:
        sweep_task = asyncio.create_task(_periodic_stale_booking_sweep())
        print(
            "📅 Stale booking sweep enabled "
            f"(every {int(settings.STALE_BOOKING_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="BookMe Settlement API",
    description="Booking payments, points ledger and escrow fee distribution",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])
app.include_router(points.router, prefix="/points", tags=["Points"])
app.include_router(funding.router, prefix="/funding", tags=["Funding"])
app.include_router(chain_events.router, prefix="/chain", tags=["Chain"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "BookMe Settlement API",
        "version": "0.1.0",
        "status": "running"
    }
