from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmslot.app.api.deps import get_session, get_session_factory
from farmslot.app.core.auth import Caller, get_current_caller
from farmslot.app.core.exceptions import ServiceError
from farmslot.app.core.logging import get_logger
from farmslot.app.schemas import (
    OrderDetail,
    OrderItemCreate,
    OrderItemResponse,
    OrderResponse,
    OrderTotalResponse,
)
from farmslot.app.services.notifications import notify_order_confirmed
from farmslot.app.services.orders import OrderService
from farmslot.app.services.reaper import sweep_expired

router = APIRouter()
logger = get_logger(__name__)


# --- 1. CREATE A DRAFT ORDER ---
@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = OrderService(session)
    order = await service.create_order(caller)
    await session.commit()
    return order


# --- 2. READ (expired holds are swept first) ---
@router.get("/{order_id}", response_model=OrderDetail)
async def get_order(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    caller: Caller = Depends(get_current_caller),
):
    """
    The sweep runs in its own transactions before this request's session is
    used, so the client never sees a lapsed hold as active.
    """
    await sweep_expired(session_factory, order_id=order_id)
    service = OrderService(session)
    return await service.get_order(order_id, caller)


# --- 3. LINE ITEMS ---
@router.post("/{order_id}/items", response_model=OrderItemResponse, status_code=201)
async def add_item(
    order_id: int,
    data: OrderItemCreate,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = OrderService(session)
    try:
        item = await service.add_item(order_id, data.product_id, data.quantity, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning(
            "Adding order item failed",
            order_id=order_id,
            product_id=data.product_id,
            error=e.message,
            error_code=e.code,
        )
        raise
    return item


@router.delete("/items/{item_id}", response_model=OrderTotalResponse)
async def remove_item(
    item_id: int,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = OrderService(session)
    try:
        order_id, total = await service.remove_item(item_id, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Removing order item failed", item_id=item_id, error=e.message, error_code=e.code)
        raise
    return {"order_id": order_id, "total": total}


# --- 4. CHECKOUT ---
@router.post("/{order_id}/checkout", response_model=OrderResponse)
async def checkout(
    order_id: int,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = OrderService(session)
    try:
        order = await service.checkout(order_id, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Checkout failed", order_id=order_id, error=e.message, error_code=e.code)
        raise
    background_tasks.add_task(notify_order_confirmed, order.user_id, order.id, order.total)
    return order


# --- 5. CANCEL ---
@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
):
    service = OrderService(session)
    try:
        order = await service.cancel_order(order_id, caller)
        await session.commit()
    except ServiceError as e:
        await session.rollback()
        logger.warning("Order cancellation failed", order_id=order_id, error=e.message, error_code=e.code)
        raise
    return order
