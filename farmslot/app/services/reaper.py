"""
Expiry reaper: releases TEMPORARY bookings whose hold has lapsed.

The sweep is idempotent and re-entrant. It may run from the background loop,
the cleanup endpoint and ahead of order reads at the same time; each booking is
re-locked and re-checked in its own transaction, so it is released exactly once.
A late sweep only makes a hold last longer.
"""
import os
import socket
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmslot.app.core.constants import BOOKING_TEMPORARY, CANCEL_REASON_EXPIRED, utcnow
from farmslot.app.core.database import async_session, transaction
from farmslot.app.core.logging import get_logger
from farmslot.app.core.metrics import reaper_failures_total, reaper_last_run_timestamp
from farmslot.app.models.delivery_slot import Booking
from farmslot.app.services.cache import CacheService
from farmslot.app.services.reservations import BookingNotFoundError, ReservationService

logger = get_logger(__name__)

SWEEP_BATCH_LIMIT = 500

OUTCOME_CLEANED = "cleaned"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


class SweepResult(BaseModel):
    cleaned: int = 0
    failed: int = 0
    skipped: int = 0
    details: list[dict] = Field(default_factory=list)


async def _expired_booking_ids(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    order_id: Optional[int],
    limit: int,
) -> list[int]:
    query = select(Booking.id).where(
        Booking.status == BOOKING_TEMPORARY,
        Booking.expires_at.isnot(None),
        Booking.expires_at < now,
    )
    if order_id is not None:
        query = query.where(Booking.order_id == order_id)
    query = query.order_by(Booking.expires_at, Booking.id).limit(limit)
    async with session_factory() as session:
        result = await session.execute(query)
        return list(result.scalars().all())


async def _reap_one(session: AsyncSession, booking_id: int, now: datetime) -> tuple[str, Optional[int]]:
    service = ReservationService(session)
    try:
        booking, order = await service.lock_booking_with_order(booking_id, include_cancelled=True)
    except BookingNotFoundError:
        return OUTCOME_SKIPPED, None
    # Someone else got there first: cancelled, checked out or already reaped
    if booking.status != BOOKING_TEMPORARY or booking.expires_at is None or booking.expires_at >= now:
        return OUTCOME_SKIPPED, order.id
    await service.release_booking(booking, CANCEL_REASON_EXPIRED)
    return OUTCOME_CLEANED, order.id


async def sweep_expired(
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    now: Optional[datetime] = None,
    order_id: Optional[int] = None,
    limit: int = SWEEP_BATCH_LIMIT,
) -> SweepResult:
    """
    Cancel every TEMPORARY booking with expires_at < now, one transaction each.

    Per-booking failures are logged and reported in the result, never raised.
    Pass order_id to sweep a single order ahead of reading it.
    """
    now = now or utcnow()
    summary = SweepResult()

    for booking_id in await _expired_booking_ids(session_factory, now, order_id, limit):
        try:
            async with transaction(session_factory) as session:
                outcome, booking_order_id = await _reap_one(session, booking_id, now)
        except Exception as e:
            reaper_failures_total.inc()
            summary.failed += 1
            summary.details.append({"booking_id": booking_id, "status": OUTCOME_FAILED, "error": str(e)})
            logger.exception("Failed to release expired booking", booking_id=booking_id)
            continue

        if outcome == OUTCOME_CLEANED:
            summary.cleaned += 1
        else:
            summary.skipped += 1
        summary.details.append({"booking_id": booking_id, "order_id": booking_order_id, "status": outcome})

    if order_id is None:
        reaper_last_run_timestamp.set_to_current_time()
    if summary.cleaned or summary.failed:
        logger.info(
            "Expired bookings swept",
            cleaned=summary.cleaned,
            failed=summary.failed,
            skipped=summary.skipped,
            order_id=order_id,
        )
    return summary


def _instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def run_scheduled_sweep(
    cache: Optional[CacheService],
    lease_seconds: int,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
) -> Optional[SweepResult]:
    """
    One tick of the background loop. Skips the tick when another instance holds
    the lease. If Redis is unreachable the sweep runs anyway.
    """
    holder = _instance_id()
    if cache is not None:
        try:
            if not await cache.try_acquire_lease(CacheService.KEY_REAPER_LEASE, holder, lease_seconds):
                logger.debug("Reaper lease held elsewhere, skipping tick")
                return None
        except Exception as e:
            logger.warning("Reaper lease unavailable, sweeping without it", error=str(e))
    return await sweep_expired(session_factory)
