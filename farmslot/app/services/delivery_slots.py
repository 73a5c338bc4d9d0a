"""Delivery slot service: producer-managed capacity that bookings draw from."""

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.auth import Caller
from farmslot.app.core.constants import (
    ACTIVE_BOOKING_STATUSES,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    CANCEL_REASON_SLOT_CLEANUP,
    MAX_SLOT_CAPACITY,
    MAX_SLOTS_PAGE_SIZE,
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLE_PRODUCER,
    ZERO,
    to_naive_utc,
    utcnow,
)
from farmslot.app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from farmslot.app.core.logging import get_logger
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order
from farmslot.app.models.producer import Producer
from farmslot.app.models.product import Product
from farmslot.app.services.inventory import InventoryLedger, SlotNotFoundError
from farmslot.app.services.policies import owns_product
from farmslot.app.services.reservations import ReservationService, parse_quantity

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20

# Bookings past the TEMPORARY stage; only an admin may force-release them
COMMITTED_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED)


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")


class SlotExistsError(ConflictError):
    code = "SLOT_EXISTS"

    def __init__(self, product_id: int, day: str):
        super().__init__(f"A delivery slot for product {product_id} already exists on {day}")


class SlotHasBookingsError(ConflictError):
    code = "SLOT_HAS_BOOKINGS"

    def __init__(self, slot_id: int):
        super().__init__(f"Delivery slot {slot_id} has active bookings")


def slot_to_dict(slot: DeliverySlot, now: Optional[datetime] = None, product_name: Optional[str] = None) -> dict:
    now = now or utcnow()
    available_capacity = slot.max_capacity - slot.reserved
    percentage = ZERO
    if slot.max_capacity > ZERO:
        percentage = (slot.reserved / slot.max_capacity * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    is_fully_booked = available_capacity <= ZERO
    is_past = slot.date < now
    data = {
        "id": slot.id,
        "product_id": slot.product_id,
        "date": slot.date,
        "max_capacity": slot.max_capacity,
        "reserved": slot.reserved,
        "is_available": slot.is_available,
        "available_capacity": available_capacity,
        "capacity_percentage": percentage,
        "is_fully_booked": is_fully_booked,
        "is_past": is_past,
        "can_book": slot.is_available and not is_past and not is_fully_booked,
        "created_at": slot.created_at,
        "updated_at": slot.updated_at,
    }
    if product_name is not None:
        data["product_name"] = product_name
    return data


def _day_bounds(value: datetime) -> tuple[datetime, datetime]:
    start = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _parse_capacity(value: Any) -> Decimal:
    capacity = parse_quantity(value)
    if capacity > MAX_SLOT_CAPACITY:
        raise ValidationError(f"Capacity must not exceed {MAX_SLOT_CAPACITY}")
    return capacity


class DeliverySlotService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = InventoryLedger(session)

    async def _authorize_slot_owner(self, slot: DeliverySlot, caller: Caller) -> None:
        """Admins, or the producer whose product the slot belongs to."""
        if caller.role == ROLE_ADMIN:
            return
        if caller.role == ROLE_PRODUCER and await owns_product(self.session, caller.id, slot.product_id):
            return
        raise ForbiddenError("You can only manage delivery slots of your own products")

    async def list_slots(
        self,
        caller: Caller,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        product_id: Optional[int] = None,
        date: Optional[datetime] = None,
        available: Optional[bool] = None,
    ) -> dict:
        """
        Page through slots visible to the caller.

        Clients only see bookable slots (available, upcoming, not full),
        producers only slots of their own products, admins everything.
        """
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > MAX_SLOTS_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_SLOTS_PAGE_SIZE}")
        now = utcnow()

        conditions = []
        if caller.role == ROLE_CLIENT:
            conditions += [
                DeliverySlot.is_available.is_(True),
                DeliverySlot.date >= now,
                DeliverySlot.reserved < DeliverySlot.max_capacity,
            ]
        elif caller.role == ROLE_PRODUCER:
            conditions.append(Producer.user_id == caller.id)
        if product_id is not None:
            conditions.append(DeliverySlot.product_id == product_id)
        if date is not None:
            day_start, day_end = _day_bounds(to_naive_utc(date))
            conditions += [DeliverySlot.date >= day_start, DeliverySlot.date < day_end]
        if available is not None:
            conditions.append(DeliverySlot.is_available.is_(available))

        base = (
            select(DeliverySlot, Product.name)
            .join(Product, Product.id == DeliverySlot.product_id)
            .join(Producer, Producer.id == Product.producer_id)
            .where(*conditions)
        )
        total = (await self.session.execute(
            select(func.count()).select_from(base.subquery())
        )).scalar_one()
        result = await self.session.execute(
            base.order_by(DeliverySlot.date, DeliverySlot.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        slots = [slot_to_dict(slot, now, product_name=name) for slot, name in result.all()]
        return {
            "slots": slots,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_slot(self, slot_id: int, caller: Caller) -> dict:
        slot = await self.session.get(DeliverySlot, slot_id)
        if not slot:
            raise SlotNotFoundError(slot_id)
        if caller.role == ROLE_PRODUCER:
            await self._authorize_slot_owner(slot, caller)
        product = await self.session.get(Product, slot.product_id)
        return slot_to_dict(slot, product_name=product.name if product else None)

    async def create_slot(
        self,
        caller: Caller,
        product_id: int,
        date: datetime,
        max_capacity: Any,
    ) -> DeliverySlot:
        """
        Open a slot for a product. Capacity may not exceed the stock on hand,
        and a product gets at most one slot per calendar day.
        """
        if caller.role not in (ROLE_PRODUCER, ROLE_ADMIN):
            raise ForbiddenError("Only producers can create delivery slots")
        capacity = _parse_capacity(max_capacity)
        date = to_naive_utc(date)
        if date < utcnow():
            raise ValidationError("Delivery slot date cannot be in the past")

        product = await self.session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        if caller.role == ROLE_PRODUCER and not await owns_product(self.session, caller.id, product_id):
            raise ForbiddenError("You can only create delivery slots for your own products")

        stock = await self.ledger.lock_stock(product_id)
        if capacity > stock.quantity:
            raise ValidationError(f"Capacity cannot exceed available stock ({stock.quantity})")

        day_start, day_end = _day_bounds(date)
        existing = await self.session.execute(
            select(DeliverySlot.id).where(
                DeliverySlot.product_id == product_id,
                DeliverySlot.date >= day_start,
                DeliverySlot.date < day_end,
            )
        )
        if existing.first() is not None:
            raise SlotExistsError(product_id, day_start.date().isoformat())

        slot = DeliverySlot(
            product_id=product_id,
            date=date,
            max_capacity=capacity,
            reserved=ZERO,
            is_available=True,
        )
        self.session.add(slot)
        await self.session.flush()
        logger.info(
            "Delivery slot created",
            slot_id=slot.id,
            product_id=product_id,
            date=date.isoformat(),
            max_capacity=str(capacity),
        )
        return slot

    async def update_slot(
        self,
        slot_id: int,
        caller: Caller,
        max_capacity: Optional[Any] = None,
        is_available: Optional[bool] = None,
    ) -> DeliverySlot:
        """
        Change capacity or availability.

        Capacity stays within [reserved, stock.quantity + reserved]: units already
        held by this slot's bookings have left the stock counter but still count
        towards its capacity.
        """
        if max_capacity is None and is_available is None:
            raise ValidationError("Nothing to update: provide max_capacity or is_available")
        slot = await self.ledger.lock_slot(slot_id)
        await self._authorize_slot_owner(slot, caller)

        if max_capacity is not None:
            capacity = _parse_capacity(max_capacity)
            if capacity < slot.reserved:
                raise ValidationError(f"Capacity cannot be lower than the reserved quantity ({slot.reserved})")
            stock = await self.ledger.lock_stock(slot.product_id)
            if capacity > stock.quantity + slot.reserved:
                raise ValidationError(
                    f"Capacity cannot exceed available stock ({stock.quantity + slot.reserved})"
                )
            slot.max_capacity = capacity
        if is_available is not None:
            slot.is_available = is_available

        await self.session.flush()
        logger.info(
            "Delivery slot updated",
            slot_id=slot.id,
            max_capacity=str(slot.max_capacity),
            is_available=slot.is_available,
            by=caller.id,
        )
        return slot

    async def delete_slot(self, slot_id: int, caller: Caller) -> None:
        slot = await self.ledger.lock_slot(slot_id)
        await self._authorize_slot_owner(slot, caller)
        active = await self.session.execute(
            select(func.count(Booking.id)).where(
                Booking.slot_id == slot.id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        )
        if active.scalar_one() > 0:
            raise SlotHasBookingsError(slot.id)
        await self.session.delete(slot)
        await self.session.flush()
        logger.info("Delivery slot deleted", slot_id=slot_id, by=caller.id)

    async def cleanup_past_slots(
        self,
        retention_days: int,
        caller: Optional[Caller] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Delete slots dated more than `retention_days` ago.

        Active bookings on a deleted slot are cancelled with their holds released
        first. Only an admin force-cleans slots that still carry PENDING or
        CONFIRMED bookings; producers (own slots only) and the scheduler
        (caller=None) leave those slots in place and report them.
        """
        if caller is not None and caller.role not in (ROLE_PRODUCER, ROLE_ADMIN):
            raise ForbiddenError("Only producers and admins can clean up delivery slots")
        force = caller is not None and caller.role == ROLE_ADMIN
        cutoff = (now or utcnow()) - timedelta(days=retention_days)

        query = select(DeliverySlot.id).where(DeliverySlot.date < cutoff)
        if caller is not None and caller.role == ROLE_PRODUCER:
            query = (
                query.join(Product, Product.id == DeliverySlot.product_id)
                .join(Producer, Producer.id == Product.producer_id)
                .where(Producer.user_id == caller.id)
            )
        slot_ids = list((await self.session.execute(query.order_by(DeliverySlot.id))).scalars().all())

        result = await self.session.execute(
            select(Booking.id, Booking.order_id, Booking.slot_id, Booking.status)
            .where(Booking.slot_id.in_(slot_ids), Booking.status.in_(ACTIVE_BOOKING_STATUSES))
            .order_by(Booking.id)
        )
        by_slot: dict[int, list] = {}
        for row in result.all():
            by_slot.setdefault(row.slot_id, []).append(row)

        skipped = []
        targets = []
        for slot_id in slot_ids:
            committed = [b for b in by_slot.get(slot_id, []) if b.status in COMMITTED_STATUSES]
            if committed and not force:
                skipped.append({"slot_id": slot_id, "active_bookings": len(committed)})
            else:
                targets.append(slot_id)

        # Take every lock up front in the global order: orders, bookings, slots, stocks
        rows = [b for slot_id in targets for b in by_slot.get(slot_id, [])]
        bookings: dict[int, Booking] = {}
        if rows:
            await self.session.execute(
                select(Order)
                .where(Order.id.in_(sorted({b.order_id for b in rows})))
                .order_by(Order.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            locked = await self.session.execute(
                select(Booking)
                .where(Booking.id.in_([b.id for b in rows]))
                .order_by(Booking.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            bookings = {b.id: b for b in locked.scalars().all()}
        await self.ledger.lock_rows(
            slot_ids=targets,
            product_ids=[b.product_id for b in bookings.values()],
        )

        reservations = ReservationService(self.session)
        deleted = 0
        cancelled = 0
        for slot_id in targets:
            keep_slot = False
            for row in by_slot.get(slot_id, []):
                booking = bookings.get(row.id)
                if booking is None or booking.status not in ACTIVE_BOOKING_STATUSES:
                    continue
                if booking.status in COMMITTED_STATUSES and not force:
                    # checked out between the scan and the lock
                    keep_slot = True
                    continue
                await reservations.release_booking(booking, CANCEL_REASON_SLOT_CLEANUP)
                cancelled += 1
            if keep_slot:
                skipped.append({"slot_id": slot_id, "active_bookings": 1})
                continue
            slot = await self.ledger.lock_slot(slot_id)
            await self.session.delete(slot)
            deleted += 1

        await self.session.flush()
        logger.info(
            "Past delivery slots cleaned up",
            deleted=deleted,
            cancelled_bookings=cancelled,
            skipped=len(skipped),
            cutoff=cutoff.isoformat(),
            by=caller.id if caller else "scheduler",
        )
        return {"deleted": deleted, "cancelled_bookings": cancelled, "skipped": skipped}
