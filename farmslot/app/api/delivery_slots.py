from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.api.deps import get_session
from farmslot.app.core.auth import Caller, get_caller_or_scheduler, get_current_caller
from farmslot.app.core.exceptions import ServiceError
from farmslot.app.core.logging import get_logger
from farmslot.app.core.settings import get_settings
from farmslot.app.schemas import (
    SlotCleanupResponse,
    SlotCreate,
    SlotListResponse,
    SlotResponse,
    SlotUpdate,
)
from farmslot.app.services.delivery_slots import DEFAULT_PAGE_SIZE, DeliverySlotService, slot_to_dict

router = APIRouter()
logger = get_logger(__name__)


@router.get("", response_model=SlotListResponse)
async def list_slots(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    product_id: Optional[int] = None,
    date: Optional[datetime] = None,
    available: Optional[bool] = None,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = DeliverySlotService(session)
    return await service.list_slots(
        caller, page=page, limit=limit, product_id=product_id, date=date, available=available
    )


@router.post("", response_model=SlotResponse, status_code=201)
async def create_slot(
    data: SlotCreate,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = DeliverySlotService(session)
    try:
        slot = await service.create_slot(caller, data.product_id, data.date, data.max_capacity)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning(
            "Slot creation failed",
            product_id=data.product_id,
            error=e.message,
            error_code=e.code,
        )
        raise
    return slot_to_dict(slot)


# Must be declared before /{slot_id} routes of the same method
@router.post("/cleanup", response_model=SlotCleanupResponse)
async def cleanup_past_slots(
    session: AsyncSession = Depends(get_session),
    caller: Optional[Caller] = Depends(get_caller_or_scheduler),
):
    """Delete slots older than SLOT_RETENTION_DAYS. Admin, producer (own slots) or scheduler."""
    service = DeliverySlotService(session)
    try:
        result = await service.cleanup_past_slots(get_settings().SLOT_RETENTION_DAYS, caller=caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Slot cleanup failed", error=e.message, error_code=e.code)
        raise
    return result


@router.get("/{slot_id}", response_model=SlotResponse)
async def get_slot(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = DeliverySlotService(session)
    return await service.get_slot(slot_id, caller)


@router.patch("/{slot_id}", response_model=SlotResponse)
async def update_slot(
    slot_id: int,
    data: SlotUpdate,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = DeliverySlotService(session)
    try:
        slot = await service.update_slot(
            slot_id, caller, max_capacity=data.max_capacity, is_available=data.is_available
        )
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Slot update failed", slot_id=slot_id, error=e.message, error_code=e.code)
        raise
    return slot_to_dict(slot)


@router.delete("/{slot_id}", status_code=204)
async def delete_slot(
    slot_id: int,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = DeliverySlotService(session)
    try:
        await service.delete_slot(slot_id, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Slot deletion failed", slot_id=slot_id, error=e.message, error_code=e.code)
        raise
    return Response(status_code=204)
