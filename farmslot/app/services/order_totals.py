"""Order total synchronizer."""
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.constants import BOOKING_CANCELLED, ONE_CENT, ZERO
from farmslot.app.core.exceptions import NotFoundError
from farmslot.app.models.delivery_slot import Booking
from farmslot.app.models.order import Order, OrderItem


async def recompute_order_total(session: AsyncSession, order_id: int) -> Decimal:
    """
    Recompute and persist order.total from persisted state.

    total = sum(item.price * item.quantity) + sum(booking.price * booking.quantity)
    over non-cancelled bookings. Prices are the snapshots stored on each row,
    never the product's current price. Runs inside the caller's transaction.
    """
    order = await session.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found")

    items = await session.execute(
        select(OrderItem.price, OrderItem.quantity).where(OrderItem.order_id == order_id)
    )
    bookings = await session.execute(
        select(Booking.price, Booking.quantity).where(
            Booking.order_id == order_id,
            Booking.status != BOOKING_CANCELLED,
        )
    )

    total = ZERO
    for price, quantity in list(items.all()) + list(bookings.all()):
        total += Decimal(str(price)) * Decimal(str(quantity))
    total = total.quantize(ONE_CENT, rounding=ROUND_HALF_UP)

    order.total = total
    await session.flush()
    return total
