"""Durable reconciliation queue for post-confirmation points debits (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.booking import Booking
from models.points_reconciliation import PointsReconciliation
from services import points as ledger
from services.errors import InsufficientPoints, SettlementError

logger = logging.getLogger(__name__)


RECONCILIATION_QUEUE_NAME = "points_reconciliation"
OPEN_STATUSES = ("pending", "retrying")


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconciliation_queue() -> Queue:
    """Return the configured reconciliation queue."""
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_points_reconciliation(reconciliation_id: str) -> Job:
    """Enqueue a points debit retry with backoff."""
    queue = get_reconciliation_queue()
    return queue.enqueue(
        "services.settlement_queue.process_points_reconciliation_job",
        reconciliation_id,
        job_id=f"points-reconciliation:{reconciliation_id}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


async def process_points_reconciliation_async(reconciliation_id: str) -> str:
    """Retry one booking debit; returns the reconciliation's resulting status."""
    async with async_session_maker() as db:
        result = await db.execute(
            select(PointsReconciliation).where(PointsReconciliation.id == reconciliation_id)
        )
        item = result.scalar_one_or_none()
        if item is None:
            logger.warning("Points reconciliation %s not found", reconciliation_id)
            return "missing"
        if item.status not in OPEN_STATUSES:
            return item.status

        booking_id = item.booking_id
        user_id = item.user_id
        points = int(item.points)
        attempts = int(item.attempts or 0) + 1

        status = "resolved"
        error_message = None
        try:
            await ledger.debit(
                db,
                user_id,
                points,
                "booking_debit",
                reference_type="booking",
                reference_id=booking_id,
                description=f"Booking payment ({points} points)",
                metadata={"reconciliation_id": reconciliation_id},
            )
        except InsufficientPoints as exc:
            # Points were spent elsewhere after payment; needs an operator.
            status = "manual_review"
            error_message = exc.message
            logger.error(
                "Points reconciliation %s needs review: booking=%s %s", reconciliation_id, booking_id, exc.message
            )
        except SettlementError as exc:
            max_attempts = max(int(settings.POINTS_RECONCILIATION_MAX_ATTEMPTS), 1)
            status = "manual_review" if attempts >= max_attempts else "retrying"
            error_message = exc.message
            logger.warning(
                "Points reconciliation %s attempt %s failed: %s", reconciliation_id, attempts, exc.message
            )

        result = await db.execute(
            select(PointsReconciliation).where(PointsReconciliation.id == reconciliation_id)
        )
        item = result.scalar_one()
        item.status = status
        item.attempts = attempts
        item.last_error = error_message
        if status == "resolved":
            item.resolved_at = datetime.now(timezone.utc)
            logger.info("Points reconciliation %s resolved for booking %s", reconciliation_id, booking_id)
        await db.commit()

        if status == "retrying":
            raise RuntimeError(f"Points reconciliation {reconciliation_id} will be retried: {error_message}")
        return status


def process_points_reconciliation_job(reconciliation_id: str) -> str:
    """RQ worker entrypoint for points reconciliation jobs."""
    return asyncio.run(process_points_reconciliation_async(reconciliation_id))


async def requeue_open_reconciliations(min_age_minutes: int = 10) -> int:
    """Re-enqueue reconciliations left open by restarts or a Redis outage."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(min_age_minutes, 0))
    async with async_session_maker() as db:
        result = await db.execute(
            select(PointsReconciliation.id)
            .join(Booking, Booking.id == PointsReconciliation.booking_id)
            .where(
                PointsReconciliation.status.in_(OPEN_STATUSES),
                PointsReconciliation.created_at < cutoff,
            )
        )
        ids = [row[0] for row in result.all()]
    for reconciliation_id in ids:
        enqueue_points_reconciliation(reconciliation_id)
    return len(ids)
