"""
Reservation engine: create, modify, confirm and cancel bookings.

Every public method runs inside the caller's transaction and leaves the
counters, the booking row and the order total consistent, or raises and lets
the caller roll everything back. Rows are always locked in the same order
(orders, bookings, slots, stocks, each kind by ascending id when several are
locked at once) so concurrent operations cannot deadlock.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.auth import Caller
from farmslot.app.core.constants import (
    ACTIVE_BOOKING_STATUSES,
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    BOOKING_TEMPORARY,
    CANCEL_REASON_CLIENT,
    CANCEL_REASON_FORCED,
    CANCEL_REASON_ORDER,
    MODIFIABLE_ORDER_STATUSES,
    QUANTITY_STEP,
    VALID_BOOKING_STATUSES,
    ZERO,
    utcnow,
)
from farmslot.app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from farmslot.app.core.logging import get_logger
from farmslot.app.core.metrics import (
    booking_conflicts_total,
    bookings_cancelled_total,
    bookings_confirmed_total,
    bookings_created_total,
)
from farmslot.app.core.settings import get_settings
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order
from farmslot.app.models.product import Product
from farmslot.app.services.inventory import InventoryLedger
from farmslot.app.services.order_totals import recompute_order_total
from farmslot.app.services import policies
from farmslot.app.services.policies import Relationship

logger = get_logger(__name__)


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: int):
        super().__init__(f"Booking {booking_id} not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")


class OrderNotModifiableError(ValidationError):
    code = "ORDER_NOT_MODIFIABLE"

    def __init__(self, order_id: int, status: str):
        super().__init__(f"Order {order_id} is {status} and can no longer be changed")


class SlotUnavailableError(ValidationError):
    code = "SLOT_UNAVAILABLE"


class DuplicateReservationError(ConflictError):
    code = "DUPLICATE_RESERVATION"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} is already reserved in this order")


class InvalidStatusTransitionError(ValidationError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change booking status from {current} to {target}")


def parse_quantity(value: Any, max_quantity: Optional[Decimal] = None) -> Decimal:
    """Validate a requested quantity: positive, bounded, at most 3 decimal places."""
    try:
        quantity = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid quantity: {value!r}")
    if not quantity.is_finite() or quantity <= ZERO:
        raise ValidationError("Quantity must be greater than 0")
    if max_quantity is not None and quantity > max_quantity:
        raise ValidationError(f"Quantity must not exceed {max_quantity}")
    if quantity != quantity.quantize(QUANTITY_STEP):
        raise ValidationError("Quantity supports at most 3 decimal places")
    return quantity.quantize(QUANTITY_STEP)


class ReservationService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = InventoryLedger(session)
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Locked reads
    # ------------------------------------------------------------------

    async def lock_booking_with_order(
        self,
        booking_id: int,
        include_cancelled: bool = False,
    ) -> tuple[Booking, Order]:
        """
        Lock a booking and the order it belongs to, order first.

        A booking never moves between orders, so reading its order_id before
        taking any lock is safe.
        """
        result = await self.session.execute(select(Booking.order_id).where(Booking.id == booking_id))
        order_id = result.scalar_one_or_none()
        if order_id is None:
            raise BookingNotFoundError(booking_id)
        order = await self._lock_order(order_id)

        result = await self.session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking or (booking.status == BOOKING_CANCELLED and not include_cancelled):
            raise BookingNotFoundError(booking_id)
        return booking, order

    async def _lock_order(self, order_id: int) -> Order:
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

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        slot_id: int,
        order_id: int,
        quantity: Any,
        caller: Caller,
    ) -> Booking:
        """
        Put a TEMPORARY hold on slot capacity and product stock for an order.

        Raises:
            ValidationError: bad quantity, unavailable or past slot, order not DRAFT
            NotFoundError: slot or order missing
            ForbiddenError: order belongs to someone else
            ConflictError: capacity or stock short, product already reserved in the order
        """
        quantity = parse_quantity(quantity, self.settings.MAX_BOOKING_QUANTITY)
        now = utcnow()

        order = await self._lock_order(order_id)
        if order.user_id != caller.id:
            raise ForbiddenError("You can only book for your own orders")
        if order.status not in MODIFIABLE_ORDER_STATUSES:
            raise OrderNotModifiableError(order.id, order.status)

        slot = await self.ledger.lock_slot(slot_id)
        if not slot.is_available:
            raise SlotUnavailableError("Delivery slot is not available")
        if slot.date < now:
            raise SlotUnavailableError("Cannot book a delivery slot in the past")

        existing = await self.session.execute(
            select(Booking.id).where(
                Booking.order_id == order.id,
                Booking.product_id == slot.product_id,
                Booking.status != BOOKING_CANCELLED,
            )
        )
        if existing.first() is not None:
            booking_conflicts_total.labels(reason="duplicate").inc()
            raise DuplicateReservationError(slot.product_id)

        product = await self.session.get(Product, slot.product_id)
        stock = await self.ledger.lock_stock(slot.product_id)
        self.ledger.check_capacity(slot, quantity)
        self.ledger.check_stock(stock, quantity)

        booking = Booking(
            slot_id=slot.id,
            order_id=order.id,
            product_id=slot.product_id,
            quantity=quantity,
            price=product.price,
            status=BOOKING_TEMPORARY,
            expires_at=now + timedelta(minutes=self.settings.BOOKING_HOLD_MINUTES),
        )
        self.session.add(booking)
        try:
            await self.session.flush()
        except IntegrityError:
            # Lost the race against another request for the same product in this order
            booking_conflicts_total.labels(reason="duplicate").inc()
            raise DuplicateReservationError(slot.product_id)

        await self.ledger.hold(slot, stock, quantity, order.id, booking.id)
        await recompute_order_total(self.session, order.id)

        bookings_created_total.inc()
        logger.info(
            "Booking created",
            booking_id=booking.id,
            slot_id=slot.id,
            order_id=order.id,
            quantity=str(quantity),
            expires_at=booking.expires_at.isoformat(),
        )
        return booking

    # ------------------------------------------------------------------
    # Modify
    # ------------------------------------------------------------------

    async def modify_booking(
        self,
        booking_id: int,
        caller: Caller,
        quantity: Optional[Any] = None,
        status: Optional[str] = None,
    ) -> Booking:
        """
        Change quantity and/or status of a live booking.

        A quantity change only checks the delta against remaining capacity and
        stock. Producers may change status only. CANCELLED goes through the
        regular cancel path.
        """
        if quantity is None and status is None:
            raise ValidationError("Nothing to update: provide quantity or status")
        if status is not None and status not in VALID_BOOKING_STATUSES:
            raise ValidationError(f"Invalid booking status: {status}")
        new_quantity = None
        if quantity is not None:
            new_quantity = parse_quantity(quantity, self.settings.MAX_BOOKING_QUANTITY)

        booking, order = await self.lock_booking_with_order(booking_id)
        relationship = await policies.resolve_relationship(
            self.session, caller, order.user_id, booking.product_id
        )
        if not policies.can_read(caller.role, relationship):
            raise ForbiddenError()
        if not policies.can_modify(caller.role, relationship, booking.status):
            raise ForbiddenError(f"Booking in status {booking.status} cannot be modified")

        if status == BOOKING_CANCELLED:
            if new_quantity is not None and new_quantity != booking.quantity:
                raise ValidationError("Cannot change quantity of a booking being cancelled")
            if not policies.can_cancel(caller.role, relationship, booking.status):
                raise ForbiddenError("Only an admin can cancel a confirmed booking")
            reason = CANCEL_REASON_CLIENT if relationship == Relationship.OWNER else CANCEL_REASON_FORCED
            await self.release_booking(booking, reason)
            return booking

        status_changed = status is not None and status != booking.status
        if status_changed:
            if not policies.is_valid_transition(booking.status, status):
                raise InvalidStatusTransitionError(booking.status, status)
            if not policies.can_set_status(caller.role, relationship, booking.status, status):
                raise ForbiddenError(f"You cannot set booking status to {status}")

        if new_quantity is not None and new_quantity != booking.quantity:
            if not policies.can_change_quantity(caller.role, relationship):
                raise ForbiddenError("Producers may change booking status only")
            slot = await self.ledger.lock_slot(booking.slot_id)
            stock = await self.ledger.lock_stock(booking.product_id)
            delta = new_quantity - booking.quantity
            await self.ledger.adjust(slot, stock, delta, order.id, booking.id)
            booking.quantity = new_quantity

        if status_changed:
            previous = booking.status
            if previous == BOOKING_TEMPORARY:
                booking.expires_at = None
            booking.status = status
            if status == BOOKING_CONFIRMED:
                bookings_confirmed_total.inc()
            logger.info(
                "Booking status changed",
                booking_id=booking.id,
                previous=previous,
                status=status,
                by=caller.id,
            )

        await self.session.flush()
        await recompute_order_total(self.session, order.id)
        return booking

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_booking(self, booking_id: int, caller: Caller) -> Booking:
        """
        Cancel a booking and give its hold back.

        A second cancel of the same id raises BookingNotFoundError.
        """
        booking, order = await self.lock_booking_with_order(booking_id)
        relationship = await policies.resolve_relationship(
            self.session, caller, order.user_id, booking.product_id
        )
        if not policies.can_read(caller.role, relationship):
            raise ForbiddenError()
        if not policies.can_cancel(caller.role, relationship, booking.status):
            raise ForbiddenError("Only an admin can cancel a confirmed booking")

        reason = CANCEL_REASON_CLIENT if relationship == Relationship.OWNER else CANCEL_REASON_FORCED
        await self.release_booking(booking, reason)
        return booking

    async def release_booking(self, booking: Booking, reason: str) -> None:
        """
        Flag an active booking CANCELLED and release its slot capacity and stock.
        The caller must already hold the order and booking locks.
        Shared by cancel, expiry, order cancellation and slot cleanup.
        """
        slot = await self.ledger.lock_slot(booking.slot_id)
        stock = await self.ledger.lock_stock(booking.product_id)
        await self.ledger.release(
            slot, stock, booking.quantity, booking.order_id, booking.id, note=reason
        )
        booking.status = BOOKING_CANCELLED
        booking.expires_at = None
        await self.session.flush()
        await recompute_order_total(self.session, booking.order_id)

        bookings_cancelled_total.labels(reason=reason).inc()
        logger.info(
            "Booking cancelled",
            booking_id=booking.id,
            order_id=booking.order_id,
            slot_id=booking.slot_id,
            quantity=str(booking.quantity),
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: int, caller: Caller) -> dict:
        result = await self.session.execute(
            select(Booking, Order.user_id, DeliverySlot.date, Product.name, Product.unit)
            .join(Order, Order.id == Booking.order_id)
            .join(DeliverySlot, DeliverySlot.id == Booking.slot_id)
            .join(Product, Product.id == Booking.product_id)
            .where(Booking.id == booking_id)
        )
        row = result.first()
        if not row:
            raise BookingNotFoundError(booking_id)
        booking, order_user_id, delivery_date, product_name, unit = row

        relationship = await policies.resolve_relationship(
            self.session, caller, order_user_id, booking.product_id
        )
        if not policies.can_read(caller.role, relationship):
            raise ForbiddenError()
        return booking_to_dict(
            booking,
            delivery_date=delivery_date,
            product_name=product_name,
            unit=unit,
            can_modify=policies.can_modify(caller.role, relationship, booking.status),
        )

    # ------------------------------------------------------------------
    # Order-level transitions
    # ------------------------------------------------------------------

    async def confirm_order_bookings(self, order_id: int) -> int:
        """Confirm every TEMPORARY or PENDING booking of an order at checkout."""
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.order_id == order_id,
                Booking.status.in_((BOOKING_TEMPORARY, BOOKING_PENDING)),
            )
            .order_by(Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bookings = result.scalars().all()
        for booking in bookings:
            booking.status = BOOKING_CONFIRMED
            booking.expires_at = None
        if bookings:
            bookings_confirmed_total.inc(len(bookings))
            await self.session.flush()
        return len(bookings)

    async def release_order_bookings(
        self,
        order_id: int,
        reason: str = CANCEL_REASON_ORDER,
        extra_product_ids: Iterable[int] = (),
    ) -> int:
        """
        Cancel every active booking of an order, releasing their holds.

        The order must already be locked. All slots and stocks involved, plus
        `extra_product_ids` the caller is about to touch, are locked in sorted
        order before any counter changes.
        """
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.order_id == order_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .order_by(Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bookings = result.scalars().all()
        await self.ledger.lock_rows(
            slot_ids=[b.slot_id for b in bookings],
            product_ids=[b.product_id for b in bookings] + list(extra_product_ids),
        )
        for booking in bookings:
            await self.release_booking(booking, reason)
        return len(bookings)


def booking_to_dict(
    booking: Booking,
    delivery_date: Optional[datetime] = None,
    product_name: Optional[str] = None,
    unit: Optional[str] = None,
    can_modify: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    data = {
        "id": booking.id,
        "slot_id": booking.slot_id,
        "order_id": booking.order_id,
        "product_id": booking.product_id,
        "quantity": booking.quantity,
        "price": booking.price,
        "status": booking.status,
        "expires_at": booking.expires_at,
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
        "total_value": booking.price * booking.quantity,
        "is_expired": bool(
            booking.status == BOOKING_TEMPORARY
            and booking.expires_at is not None
            and booking.expires_at < now
        ),
    }
    if delivery_date is not None:
        data["delivery_date"] = delivery_date
        data["days_until_delivery"] = math.ceil((delivery_date - now).total_seconds() / 86400)
    if product_name is not None:
        data["product_name"] = product_name
        data["unit"] = unit
    if can_modify is not None:
        data["can_modify"] = can_modify
    return data
