"""
Tests for ReservationService.modify_booking.

Tests cover:
- Quantity changes checked by delta only, and rolled back as a whole on conflict
- Status transitions and who may make them
- Producers restricted to status changes
- CANCELLED through PATCH releasing the hold
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.constants import utcnow
from farmslot.app.core.exceptions import ForbiddenError, ValidationError
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order
from farmslot.app.models.product import Product
from farmslot.app.services.inventory import CapacityExceededError, InsufficientStockError
from farmslot.app.services.reaper import sweep_expired
from farmslot.app.services.reservations import (
    BookingNotFoundError,
    InvalidStatusTransitionError,
    ReservationService,
)
from farmslot.tests.conftest import caller_for, load, rollback, stock_quantity


@pytest.fixture
async def booking(test_session: AsyncSession, client_user, product, slot, order) -> Booking:
    """A TEMPORARY booking of 6 on the default slot (capacity 10, stock 10)."""
    booking = await ReservationService(test_session).create_booking(
        slot.id, order.id, 6, caller_for(client_user)
    )
    await test_session.commit()
    return booking


@pytest.mark.asyncio
async def test_increase_checks_delta_only(test_session: AsyncSession, client_user, product, slot, booking):
    """6 -> 9 needs 3 more units; 4 remain, so it succeeds."""
    updated = await ReservationService(test_session).modify_booking(
        booking.id, caller_for(client_user), quantity=9
    )
    await test_session.commit()

    assert updated.quantity == Decimal("9")
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("9")
    assert await stock_quantity(product.id) == Decimal("1")
    assert (await load(Order, booking.order_id)).total == Decimal("18.00")


@pytest.mark.asyncio
async def test_increase_beyond_capacity_changes_nothing(
    test_session: AsyncSession, client_user, product, slot, booking
):
    with pytest.raises(CapacityExceededError):
        await ReservationService(test_session).modify_booking(booking.id, caller_for(client_user), quantity=11)
    await rollback(test_session)

    assert (await load(Booking, booking.id)).quantity == Decimal("6")
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("6")
    assert await stock_quantity(product.id) == Decimal("4")


@pytest.mark.asyncio
async def test_increase_beyond_stock(
    test_session: AsyncSession, make_product, make_slot, client_user, order
):
    product = await make_product(stock="5", name="Carrots")
    slot = await make_slot(product, max_capacity="10")
    service = ReservationService(test_session)
    booking = await service.create_booking(slot.id, order.id, 4, caller_for(client_user))
    await test_session.commit()

    with pytest.raises(InsufficientStockError):
        await service.modify_booking(booking.id, caller_for(client_user), quantity=6)
    await rollback(test_session)
    assert await stock_quantity(product.id) == Decimal("1")


@pytest.mark.asyncio
async def test_decrease_returns_units(test_session: AsyncSession, client_user, product, slot, booking):
    await ReservationService(test_session).modify_booking(booking.id, caller_for(client_user), quantity="1.5")
    await test_session.commit()

    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("1.5")
    assert await stock_quantity(product.id) == Decimal("8.5")
    assert (await load(Order, booking.order_id)).total == Decimal("3.00")


@pytest.mark.asyncio
async def test_quantity_change_keeps_price_snapshot(
    test_session: AsyncSession, client_user, product, booking
):
    db_product = await test_session.get(Product, product.id)
    db_product.price = Decimal("5.00")
    await test_session.commit()

    updated = await ReservationService(test_session).modify_booking(
        booking.id, caller_for(client_user), quantity=3
    )
    await test_session.commit()
    assert updated.price == Decimal("2.00")
    assert (await load(Order, booking.order_id)).total == Decimal("6.00")


@pytest.mark.asyncio
async def test_owner_cannot_take_hold_out_of_expiry(
    test_session: AsyncSession, client_user, product, slot, booking
):
    """A client cannot park a hold in PENDING to dodge the reaper."""
    with pytest.raises(ForbiddenError):
        await ReservationService(test_session).modify_booking(
            booking.id, caller_for(client_user), status="PENDING"
        )
    await rollback(test_session)

    kept = await load(Booking, booking.id)
    assert kept.status == "TEMPORARY"
    assert kept.expires_at is not None

    result = await sweep_expired(now=utcnow() + timedelta(hours=300))
    assert result.cleaned == 1
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("0")
    assert await stock_quantity(product.id) == Decimal("10")


@pytest.mark.asyncio
async def test_owner_cannot_confirm(test_session: AsyncSession, client_user, booking):
    with pytest.raises(ForbiddenError):
        await ReservationService(test_session).modify_booking(
            booking.id, caller_for(client_user), status="CONFIRMED"
        )
    await rollback(test_session)
    assert (await load(Booking, booking.id)).status == "TEMPORARY"


@pytest.mark.asyncio
async def test_producer_changes_status_only(test_session: AsyncSession, producer_user, booking):
    service = ReservationService(test_session)
    with pytest.raises(ForbiddenError):
        await service.modify_booking(booking.id, caller_for(producer_user), quantity=2)
    await rollback(test_session)

    updated = await service.modify_booking(booking.id, caller_for(producer_user), status="CONFIRMED")
    await test_session.commit()
    assert updated.status == "CONFIRMED"
    assert updated.quantity == Decimal("6")


@pytest.mark.asyncio
async def test_unrelated_producer_forbidden(test_session: AsyncSession, other_producer, other_producer_user, booking):
    with pytest.raises(ForbiddenError):
        await ReservationService(test_session).modify_booking(
            booking.id, caller_for(other_producer_user), status="PENDING"
        )
    await rollback(test_session)


@pytest.mark.asyncio
async def test_backward_transition_rejected(test_session: AsyncSession, producer_user, admin_user, booking):
    service = ReservationService(test_session)
    await service.modify_booking(booking.id, caller_for(producer_user), status="PENDING")
    await test_session.commit()

    with pytest.raises(InvalidStatusTransitionError):
        await service.modify_booking(booking.id, caller_for(admin_user), status="TEMPORARY")
    await rollback(test_session)


@pytest.mark.asyncio
async def test_owner_cannot_touch_confirmed_booking(
    test_session: AsyncSession, client_user, admin_user, slot, booking
):
    service = ReservationService(test_session)
    await service.modify_booking(booking.id, caller_for(admin_user), status="CONFIRMED")
    await test_session.commit()

    with pytest.raises(ForbiddenError):
        await service.modify_booking(booking.id, caller_for(client_user), quantity=2)
    await rollback(test_session)

    # admins still can
    await service.modify_booking(booking.id, caller_for(admin_user), quantity=2)
    await test_session.commit()
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("2")


@pytest.mark.asyncio
async def test_cancel_through_modify_releases_hold(
    test_session: AsyncSession, client_user, product, slot, booking
):
    updated = await ReservationService(test_session).modify_booking(
        booking.id, caller_for(client_user), status="CANCELLED"
    )
    await test_session.commit()
    assert updated.status == "CANCELLED"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("0")
    assert await stock_quantity(product.id) == Decimal("10")
    assert (await load(Order, booking.order_id)).total == Decimal("0.00")


@pytest.mark.asyncio
async def test_modify_cancelled_booking_not_found(test_session: AsyncSession, client_user, booking):
    service = ReservationService(test_session)
    await service.cancel_booking(booking.id, caller_for(client_user))
    await test_session.commit()

    with pytest.raises(BookingNotFoundError):
        await service.modify_booking(booking.id, caller_for(client_user), quantity=1)
    await rollback(test_session)


@pytest.mark.asyncio
async def test_modify_requires_a_change(test_session: AsyncSession, client_user, booking):
    service = ReservationService(test_session)
    with pytest.raises(ValidationError):
        await service.modify_booking(booking.id, caller_for(client_user))
    with pytest.raises(ValidationError):
        await service.modify_booking(booking.id, caller_for(client_user), status="SHIPPED")
    with pytest.raises(ValidationError):
        await service.modify_booking(booking.id, caller_for(client_user), quantity=0)
    await rollback(test_session)
