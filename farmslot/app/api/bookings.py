from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmslot.app.api.deps import get_session, get_session_factory
from farmslot.app.core.auth import Caller, get_current_caller, require_admin_or_scheduler
from farmslot.app.core.constants import BOOKING_CANCELLED, CANCEL_REASON_FORCED, utcnow
from farmslot.app.core.exceptions import ServiceError
from farmslot.app.core.limiter import limiter
from farmslot.app.core.logging import get_logger
from farmslot.app.core.settings import get_settings
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order
from farmslot.app.schemas import (
    BookingCreate,
    BookingCreatedResponse,
    BookingDetail,
    BookingResponse,
    BookingUpdate,
    SweepResponse,
)
from farmslot.app.services.notifications import notify_booking_cancelled, notify_booking_created
from farmslot.app.services.reaper import sweep_expired
from farmslot.app.services.reservations import ReservationService, booking_to_dict

router = APIRouter()
logger = get_logger(__name__)


def _booking_rate_limit() -> str:
    return get_settings().BOOKING_RATE_LIMIT


async def _notify_if_forced(
    background_tasks: BackgroundTasks,
    session: AsyncSession,
    booking: Booking,
    caller: Caller,
) -> None:
    """Tell the client when someone else cancelled their booking."""
    order = await session.get(Order, booking.order_id)
    if order and order.user_id != caller.id:
        background_tasks.add_task(
            notify_booking_cancelled, order.user_id, booking.id, booking.order_id, CANCEL_REASON_FORCED
        )


# --- 1. BOOK A SLOT ---
@router.post("/delivery-slots/{slot_id}/book", response_model=BookingCreatedResponse, status_code=201)
@limiter.limit(_booking_rate_limit)
async def book_slot(
    request: Request,
    slot_id: int,
    data: BookingCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    """
    Hold part of a slot's capacity for one of the caller's draft orders.
    The hold lapses after BOOKING_HOLD_MINUTES unless the order is checked out.
    """
    service = ReservationService(session)
    try:
        booking = await service.create_booking(slot_id, data.order_id, data.quantity, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning(
            "Booking failed",
            slot_id=slot_id,
            order_id=data.order_id,
            quantity=str(data.quantity),
            error=e.message,
            error_code=e.code,
        )
        raise

    slot = await session.get(DeliverySlot, slot_id)
    background_tasks.add_task(
        notify_booking_created,
        caller.id,
        booking.id,
        booking.order_id,
        slot.date,
        booking.quantity,
        booking.expires_at,
    )
    expires_in = int((booking.expires_at - utcnow()).total_seconds())
    return {
        "booking": booking_to_dict(booking),
        "expires_at": booking.expires_at,
        "expires_in_seconds": max(expires_in, 0),
    }


# --- 2. EXPIRED HOLD CLEANUP (admin / scheduler) ---
@router.post("/bookings/cleanup", response_model=SweepResponse)
async def cleanup_expired_bookings(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    triggered_by: str = Depends(require_admin_or_scheduler),
):
    result = await sweep_expired(session_factory)
    logger.info(
        "Expired booking cleanup triggered",
        by=triggered_by,
        cleaned=result.cleaned,
        failed=result.failed,
    )
    return result


# --- 3. READ ---
@router.get("/bookings/{booking_id}", response_model=BookingDetail)
async def get_booking(
    booking_id: int,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = ReservationService(session)
    return await service.get_booking(booking_id, caller)


# --- 4. MODIFY ---
@router.patch("/bookings/{booking_id}", response_model=BookingResponse)
async def modify_booking(
    booking_id: int,
    data: BookingUpdate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = ReservationService(session)
    try:
        booking = await service.modify_booking(
            booking_id, caller, quantity=data.quantity, status=data.status
        )
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning(
            "Booking update failed",
            booking_id=booking_id,
            error=e.message,
            error_code=e.code,
        )
        raise

    if booking.status == BOOKING_CANCELLED:
        await _notify_if_forced(background_tasks, session, booking, caller)
    return booking_to_dict(booking)


# --- 5. CANCEL ---
@router.delete("/bookings/{booking_id}", status_code=204)
async def cancel_booking(
    booking_id: int,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = ReservationService(session)
    try:
        booking = await service.cancel_booking(booking_id, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning(
            "Booking cancellation failed",
            booking_id=booking_id,
            error=e.message,
            error_code=e.code,
        )
        raise

    await _notify_if_forced(background_tasks, session, booking, caller)
    return Response(status_code=204)
