"""
Order service: the cart side of reservations.

Only the parts of the order lifecycle that move stock, slot capacity or the
order total live here; payment and fulfilment belong to other systems.
"""
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.auth import Caller
from farmslot.app.core.constants import (
    ACTIVE_BOOKING_STATUSES,
    CLIENT_CANCELLABLE_ORDER_STATUSES,
    MODIFIABLE_ORDER_STATUSES,
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DRAFT,
    ZERO,
    utcnow,
)
from farmslot.app.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from farmslot.app.core.logging import get_logger
from farmslot.app.core.settings import get_settings
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order, OrderItem
from farmslot.app.models.product import Product
from farmslot.app.services.inventory import InventoryLedger
from farmslot.app.services.order_totals import recompute_order_total
from farmslot.app.services.reservations import (
    OrderNotFoundError,
    OrderNotModifiableError,
    ReservationService,
    booking_to_dict,
    parse_quantity,
)

logger = get_logger(__name__)


class OrderItemNotFoundError(NotFoundError):
    def __init__(self, item_id: int):
        super().__init__(f"Order item {item_id} not found")


class ProductUnavailableError(ValidationError):
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} is not available")


class EmptyOrderError(ValidationError):
    code = "EMPTY_ORDER"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} has no items or bookings")


class OrderService:
    """Service class for order operations."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = InventoryLedger(session)
        self.reservations = ReservationService(session)

    async def _get_order_for_update(self, order_id: int) -> Order:
        result = await self.session.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _check_owner(order: Order, caller: Caller) -> None:
        if order.user_id != caller.id:
            raise ForbiddenError("Access denied to this order")

    async def create_order(self, caller: Caller) -> Order:
        order = Order(user_id=caller.id, status=ORDER_DRAFT, total=ZERO)
        self.session.add(order)
        await self.session.flush()
        logger.info("Order created", order_id=order.id, user_id=caller.id)
        return order

    async def get_order(self, order_id: int, caller: Caller) -> Dict[str, Any]:
        """Order with its line items and bookings. Owner or admin only."""
        order = await self.session.get(Order, order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        if not caller.is_admin:
            self._check_owner(order, caller)

        items_result = await self.session.execute(
            select(OrderItem, Product.name)
            .join(Product, Product.id == OrderItem.product_id)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
        )
        bookings_result = await self.session.execute(
            select(Booking, DeliverySlot.date, Product.name, Product.unit)
            .join(DeliverySlot, DeliverySlot.id == Booking.slot_id)
            .join(Product, Product.id == Booking.product_id)
            .where(Booking.order_id == order_id)
            .order_by(Booking.id)
        )
        now = utcnow()
        return {
            "id": order.id,
            "user_id": order.user_id,
            "status": order.status,
            "total": order.total,
            "created_at": order.created_at,
            "updated_at": order.updated_at,
            "checked_out_at": order.checked_out_at,
            "items": [
                {
                    "id": item.id,
                    "product_id": item.product_id,
                    "product_name": name,
                    "quantity": item.quantity,
                    "price": item.price,
                    "total_value": item.price * item.quantity,
                }
                for item, name in items_result.all()
            ],
            "bookings": [
                booking_to_dict(booking, delivery_date=date, product_name=name, unit=unit, now=now)
                for booking, date, name, unit in bookings_result.all()
            ],
        }

    async def add_item(self, order_id: int, product_id: int, quantity: Any, caller: Caller) -> OrderItem:
        """
        Add a standard line item. Stock leaves the counter immediately; a second
        add of the same product grows the existing line.
        """
        quantity = parse_quantity(quantity, get_settings().MAX_BOOKING_QUANTITY)
        order = await self._get_order_for_update(order_id)
        self._check_owner(order, caller)
        if order.status not in MODIFIABLE_ORDER_STATUSES:
            raise OrderNotModifiableError(order.id, order.status)

        product = await self.session.get(Product, product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if not product.available:
            raise ProductUnavailableError(product_id)

        stock = await self.ledger.lock_stock(product_id)
        await self.ledger.take_stock(stock, quantity, order.id)

        result = await self.session.execute(
            select(OrderItem).where(OrderItem.order_id == order.id, OrderItem.product_id == product_id)
        )
        item = result.scalar_one_or_none()
        if item:
            # keep the original price snapshot for the whole line
            item.quantity = item.quantity + quantity
        else:
            item = OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, price=product.price)
            self.session.add(item)
        await self.session.flush()
        await recompute_order_total(self.session, order.id)
        logger.info(
            "Order item added",
            order_id=order.id,
            item_id=item.id,
            product_id=product_id,
            quantity=str(quantity),
        )
        return item

    async def remove_item(self, item_id: int, caller: Caller) -> tuple[int, Decimal]:
        """Remove a line item and return its stock. Returns (order_id, new total)."""
        result = await self.session.execute(select(OrderItem.order_id).where(OrderItem.id == item_id))
        order_id = result.scalar_one_or_none()
        if order_id is None:
            raise OrderItemNotFoundError(item_id)
        order = await self._get_order_for_update(order_id)
        self._check_owner(order, caller)
        if order.status not in MODIFIABLE_ORDER_STATUSES:
            raise OrderNotModifiableError(order.id, order.status)

        result = await self.session.execute(
            select(OrderItem)
            .where(OrderItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if not item:
            raise OrderItemNotFoundError(item_id)

        stock = await self.ledger.lock_stock(item.product_id)
        await self.ledger.return_stock(stock, item.quantity, order.id)
        await self.session.delete(item)
        await self.session.flush()
        total = await recompute_order_total(self.session, order.id)
        logger.info("Order item removed", order_id=order.id, item_id=item_id)
        return order.id, total

    async def checkout(self, order_id: int, caller: Caller) -> Order:
        """
        Confirm a DRAFT order. Its TEMPORARY holds become permanent, even ones
        past their expiry that the reaper has not reached yet.
        """
        order = await self._get_order_for_update(order_id)
        self._check_owner(order, caller)
        if order.status not in MODIFIABLE_ORDER_STATUSES:
            raise OrderNotModifiableError(order.id, order.status)

        items = await self.session.execute(select(OrderItem.id).where(OrderItem.order_id == order.id).limit(1))
        if items.first() is None:
            active = await self.session.execute(
                select(Booking.id)
                .where(Booking.order_id == order.id, Booking.status.in_(ACTIVE_BOOKING_STATUSES))
                .limit(1)
            )
            if active.first() is None:
                raise EmptyOrderError(order.id)

        confirmed = await self.reservations.confirm_order_bookings(order.id)
        order.status = ORDER_CONFIRMED
        order.checked_out_at = utcnow()
        await recompute_order_total(self.session, order.id)
        logger.info("Order checked out", order_id=order.id, confirmed_bookings=confirmed, total=str(order.total))
        return order

    async def cancel_order(self, order_id: int, caller: Caller) -> Order:
        """
        Cancel an order, returning item stock and releasing every booking.

        Clients may cancel their own DRAFT or PENDING orders; admins any order
        that is not already cancelled.
        """
        order = await self._get_order_for_update(order_id)
        if order.status == ORDER_CANCELLED:
            raise ValidationError(f"Order {order.id} is already cancelled")
        if not caller.is_admin:
            self._check_owner(order, caller)
            if order.status not in CLIENT_CANCELLABLE_ORDER_STATUSES:
                raise ForbiddenError(f"Order in status {order.status} can only be cancelled by an admin")

        items_result = await self.session.execute(
            select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.product_id)
        )
        items: List[OrderItem] = list(items_result.scalars().all())

        # item stocks join the booking locks so every stock row is taken in id order
        released = await self.reservations.release_order_bookings(
            order.id, extra_product_ids=[item.product_id for item in items]
        )
        for item in items:
            stock = await self.ledger.lock_stock(item.product_id)
            await self.ledger.return_stock(stock, item.quantity, order.id)
            await self.session.delete(item)

        order.status = ORDER_CANCELLED
        await self.session.flush()
        await recompute_order_total(self.session, order.id)
        logger.info(
            "Order cancelled",
            order_id=order.id,
            released_bookings=released,
            returned_items=len(items),
            by=caller.id,
        )
        return order
