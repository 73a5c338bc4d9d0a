"""
Inventory ledger: the two shared counters behind every reservation.

`DeliverySlot.reserved` (out of `max_capacity`) and `Stock.quantity` are only
ever changed through this module, inside the caller's transaction, after the
rows were re-read with SELECT ... FOR UPDATE. Every stock movement is also
journaled to stock_history.
"""
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.constants import (
    ACTIVE_BOOKING_STATUSES,
    STOCK_BOOKING_ADJUST,
    STOCK_BOOKING_HOLD,
    STOCK_BOOKING_RELEASE,
    STOCK_ORDER_ITEM,
    STOCK_ORDER_ITEM_RETURN,
    QUANTITY_STEP,
    ZERO,
)
from farmslot.app.core.exceptions import ConflictError, NotFoundError
from farmslot.app.core.logging import get_logger
from farmslot.app.core.metrics import booking_conflicts_total, slot_counter_drift_total
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.product import Stock, StockHistory

logger = get_logger(__name__)


class SlotNotFoundError(NotFoundError):
    def __init__(self, slot_id: int):
        super().__init__(f"Delivery slot {slot_id} not found")


class StockNotFoundError(NotFoundError):
    def __init__(self, product_id: int):
        super().__init__(f"Stock for product {product_id} not found")


class CapacityExceededError(ConflictError):
    code = "CAPACITY_EXCEEDED"

    def __init__(self, available: Decimal):
        super().__init__(f"Insufficient slot capacity. Available: {available}")
        self.available = available


class InsufficientStockError(ConflictError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, available: Decimal):
        super().__init__(f"Insufficient stock. Available: {available}")
        self.available = available


class InventoryLedger:
    """Locked reads and counter writes for slots and stock."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock_slot(self, slot_id: int) -> DeliverySlot:
        result = await self.session.execute(
            select(DeliverySlot)
            .where(DeliverySlot.id == slot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        slot = result.scalar_one_or_none()
        if not slot:
            raise SlotNotFoundError(slot_id)
        return slot

    async def lock_stock(self, product_id: int) -> Stock:
        result = await self.session.execute(
            select(Stock)
            .where(Stock.product_id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        stock = result.scalar_one_or_none()
        if not stock:
            raise StockNotFoundError(product_id)
        return stock

    async def lock_rows(self, slot_ids: Iterable[int] = (), product_ids: Iterable[int] = ()) -> None:
        """
        Lock several slots and stocks up front: all slots before any stock,
        each by ascending id. Later lock_slot/lock_stock calls on these rows
        in the same transaction do not wait.
        """
        slot_ids = sorted(set(slot_ids))
        product_ids = sorted(set(product_ids))
        if slot_ids:
            await self.session.execute(
                select(DeliverySlot)
                .where(DeliverySlot.id.in_(slot_ids))
                .order_by(DeliverySlot.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        if product_ids:
            await self.session.execute(
                select(Stock)
                .where(Stock.product_id.in_(product_ids))
                .order_by(Stock.product_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )

    @staticmethod
    def available_capacity(slot: DeliverySlot) -> Decimal:
        return slot.max_capacity - slot.reserved

    def check_capacity(self, slot: DeliverySlot, quantity: Decimal) -> None:
        available = self.available_capacity(slot)
        if quantity > available:
            booking_conflicts_total.labels(reason="capacity").inc()
            raise CapacityExceededError(available)

    def check_stock(self, stock: Stock, quantity: Decimal) -> None:
        if quantity > stock.quantity:
            booking_conflicts_total.labels(reason="stock").inc()
            raise InsufficientStockError(stock.quantity)

    def _journal(
        self,
        product_id: int,
        quantity: Decimal,
        movement: str,
        order_id: Optional[int] = None,
        booking_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> None:
        self.session.add(StockHistory(
            product_id=product_id,
            quantity=quantity,
            type=movement,
            order_id=order_id,
            booking_id=booking_id,
            note=note,
        ))

    async def hold(
        self,
        slot: DeliverySlot,
        stock: Stock,
        quantity: Decimal,
        order_id: int,
        booking_id: Optional[int] = None,
    ) -> None:
        """Take `quantity` out of slot capacity and stock. Both rows must be locked."""
        self.check_capacity(slot, quantity)
        self.check_stock(stock, quantity)
        slot.reserved = slot.reserved + quantity
        stock.quantity = stock.quantity - quantity
        self._journal(stock.product_id, -quantity, STOCK_BOOKING_HOLD, order_id, booking_id)
        await self.session.flush()

    async def adjust(
        self,
        slot: DeliverySlot,
        stock: Stock,
        delta: Decimal,
        order_id: int,
        booking_id: int,
    ) -> None:
        """
        Apply a signed change to an existing hold.

        Only a positive delta is checked against remaining capacity and stock;
        shrinking a hold always succeeds.
        """
        if delta == ZERO:
            return
        if delta > ZERO:
            self.check_capacity(slot, delta)
            self.check_stock(stock, delta)
        slot.reserved = slot.reserved + delta
        stock.quantity = stock.quantity - delta
        self._journal(stock.product_id, -delta, STOCK_BOOKING_ADJUST, order_id, booking_id)
        await self.session.flush()

    async def release(
        self,
        slot: DeliverySlot,
        stock: Stock,
        quantity: Decimal,
        order_id: int,
        booking_id: int,
        note: Optional[str] = None,
    ) -> None:
        """Give a hold back to slot capacity and stock."""
        if quantity > slot.reserved:
            # Counter drifted below what the booking holds; never go negative
            logger.error(
                "Slot reserved counter below booking quantity",
                slot_id=slot.id,
                reserved=str(slot.reserved),
                quantity=str(quantity),
                booking_id=booking_id,
            )
            slot.reserved = ZERO
        else:
            slot.reserved = slot.reserved - quantity
        stock.quantity = stock.quantity + quantity
        self._journal(stock.product_id, quantity, STOCK_BOOKING_RELEASE, order_id, booking_id, note)
        await self.session.flush()

    async def take_stock(self, stock: Stock, quantity: Decimal, order_id: int) -> None:
        """Commit stock to a standard order line item."""
        self.check_stock(stock, quantity)
        stock.quantity = stock.quantity - quantity
        self._journal(stock.product_id, -quantity, STOCK_ORDER_ITEM, order_id)
        await self.session.flush()

    async def return_stock(self, stock: Stock, quantity: Decimal, order_id: int) -> None:
        stock.quantity = stock.quantity + quantity
        self._journal(stock.product_id, quantity, STOCK_ORDER_ITEM_RETURN, order_id)
        await self.session.flush()


async def reconcile_slot_counters(session: AsyncSession) -> list[dict]:
    """
    Recompute every slot's `reserved` from its active bookings and fix drift.

    Returns one entry per corrected slot: {slot_id, was, now}.
    """
    sums_result = await session.execute(
        select(Booking.slot_id, func.sum(Booking.quantity))
        .where(Booking.status.in_(ACTIVE_BOOKING_STATUSES))
        .group_by(Booking.slot_id)
    )
    held = {
        slot_id: Decimal(str(total or 0)).quantize(QUANTITY_STEP)
        for slot_id, total in sums_result.all()
    }

    slots_result = await session.execute(
        select(DeliverySlot)
        .order_by(DeliverySlot.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    corrected = []
    for slot in slots_result.scalars().all():
        expected = held.get(slot.id, ZERO)
        if slot.reserved == expected:
            continue
        if expected > slot.max_capacity:
            logger.error(
                "Active bookings exceed slot capacity, counter left as is",
                slot_id=slot.id,
                max_capacity=str(slot.max_capacity),
                held=str(expected),
            )
            continue
        logger.warning(
            "Slot reserved counter drift corrected",
            slot_id=slot.id,
            was=str(slot.reserved),
            now=str(expected),
        )
        slot_counter_drift_total.inc()
        corrected.append({"slot_id": slot.id, "was": str(slot.reserved), "now": str(expected)})
        slot.reserved = expected
    await session.flush()
    return corrected
