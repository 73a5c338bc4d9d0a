"""
Tests for the expiry reaper.

Tests cover:
- Lapsed TEMPORARY holds released exactly once with counters restored
- Live, confirmed and other orders' bookings left alone
- Concurrent sweeps and per-booking failure isolation
- The Redis lease guarding the background loop
"""
import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.constants import utcnow
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.app.models.order import Order
from farmslot.app.services.cache import CacheService
from farmslot.app.services.orders import OrderService
from farmslot.app.services.reaper import run_scheduled_sweep, sweep_expired
from farmslot.app.services.reservations import ReservationService
from farmslot.tests.conftest import MockCacheService, caller_for, load, stock_quantity


def _hours_later(hours: int):
    return utcnow() + timedelta(hours=hours)


@pytest.fixture
async def booking(test_session: AsyncSession, client_user, product, slot, order) -> Booking:
    booking = await ReservationService(test_session).create_booking(
        slot.id, order.id, 4, caller_for(client_user)
    )
    await test_session.commit()
    return booking


@pytest.mark.asyncio
async def test_sweep_releases_lapsed_hold(test_session: AsyncSession, product, slot, order, booking):
    """Created at T with a 2h hold, swept at T+3h: cancelled and fully released."""
    assert (await load(Order, order.id)).total == Decimal("8.00")

    result = await sweep_expired(now=_hours_later(3))

    assert result.cleaned == 1
    assert result.failed == 0
    assert result.details[0]["booking_id"] == booking.id
    assert (await load(Booking, booking.id)).status == "CANCELLED"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("0")
    assert await stock_quantity(product.id) == Decimal("10")
    assert (await load(Order, order.id)).total == Decimal("0.00")


@pytest.mark.asyncio
async def test_second_sweep_is_noop(test_session: AsyncSession, product, slot, booking):
    first = await sweep_expired(now=_hours_later(3))
    second = await sweep_expired(now=_hours_later(4))

    assert first.cleaned == 1
    assert second.cleaned == 0
    assert second.details == []
    assert await stock_quantity(product.id) == Decimal("10")


@pytest.mark.asyncio
async def test_live_hold_is_kept(test_session: AsyncSession, slot, booking):
    result = await sweep_expired()
    assert result.cleaned == 0
    assert (await load(Booking, booking.id)).status == "TEMPORARY"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("4")


@pytest.mark.asyncio
async def test_checked_out_booking_is_kept(test_session: AsyncSession, client_user, slot, order, booking):
    await OrderService(test_session).checkout(order.id, caller_for(client_user))
    await test_session.commit()

    result = await sweep_expired(now=_hours_later(3))
    assert result.cleaned == 0
    assert (await load(Booking, booking.id)).status == "CONFIRMED"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("4")


@pytest.mark.asyncio
async def test_sweep_scoped_to_order(
    test_session: AsyncSession, make_order, make_product, make_slot, other_client_user, order, booking
):
    other_order = await make_order(other_client_user)
    other_product = await make_product(name="Beans")
    other_slot = await make_slot(other_product)
    other = await ReservationService(test_session).create_booking(
        other_slot.id, other_order.id, 1, caller_for(other_client_user)
    )
    await test_session.commit()

    result = await sweep_expired(now=_hours_later(3), order_id=order.id)

    assert result.cleaned == 1
    assert (await load(Booking, booking.id)).status == "CANCELLED"
    assert (await load(Booking, other.id)).status == "TEMPORARY"


@pytest.mark.asyncio
async def test_concurrent_sweeps_release_once(test_session: AsyncSession, product, slot, booking):
    later = _hours_later(3)
    first, second = await asyncio.gather(sweep_expired(now=later), sweep_expired(now=later))

    assert first.cleaned + second.cleaned == 1
    assert first.failed == second.failed == 0
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("0")
    assert await stock_quantity(product.id) == Decimal("10")


@pytest.mark.asyncio
async def test_one_failure_does_not_block_the_sweep(
    test_session: AsyncSession, monkeypatch, make_order, make_product, make_slot,
    other_client_user, product, slot, booking
):
    other_order = await make_order(other_client_user)
    other_product = await make_product(name="Beans")
    other_slot = await make_slot(other_product)
    healthy = await ReservationService(test_session).create_booking(
        other_slot.id, other_order.id, 2, caller_for(other_client_user)
    )
    await test_session.commit()

    original = ReservationService.release_booking

    async def flaky_release(self, target, reason):
        if target.id == booking.id:
            raise RuntimeError("boom")
        return await original(self, target, reason)

    monkeypatch.setattr(ReservationService, "release_booking", flaky_release)

    result = await sweep_expired(now=_hours_later(3))

    assert result.cleaned == 1
    assert result.failed == 1
    failed = [d for d in result.details if d["status"] == "failed"]
    assert failed[0]["booking_id"] == booking.id
    # the failed booking's transaction rolled back as a whole
    assert (await load(Booking, booking.id)).status == "TEMPORARY"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("4")
    assert (await load(Booking, healthy.id)).status == "CANCELLED"
    assert (await load(DeliverySlot, other_slot.id)).reserved == Decimal("0")


@pytest.mark.asyncio
async def test_scheduled_sweep_respects_lease(test_session: AsyncSession, booking):
    cache = MockCacheService()
    await cache.try_acquire_lease(CacheService.KEY_REAPER_LEASE, "other-instance", 60)

    assert await run_scheduled_sweep(cache, lease_seconds=60) is None

    # the other instance's lease lapses
    del cache._leases[CacheService.KEY_REAPER_LEASE]
    result = await run_scheduled_sweep(cache, lease_seconds=60)
    assert result is not None
    assert result.failed == 0


@pytest.mark.asyncio
async def test_scheduled_sweep_runs_without_redis(test_session: AsyncSession, booking):
    class BrokenCache:
        async def try_acquire_lease(self, key, holder, ttl):
            raise ConnectionError("redis down")

    result = await run_scheduled_sweep(BrokenCache(), lease_seconds=60)
    assert result is not None
