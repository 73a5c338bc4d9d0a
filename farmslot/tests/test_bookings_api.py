"""
Tests for the booking endpoints.

Tests cover:
- POST /delivery-slots/{slot_id}/book
- GET/PATCH/DELETE /bookings/{booking_id}
- POST /bookings/cleanup (admin token or internal key)
- Error body shape {"detail", "code"}
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.constants import utcnow
from farmslot.app.models.delivery_slot import Booking, DeliverySlot
from farmslot.tests.conftest import TEST_INTERNAL_KEY, auth_header_for, load, stock_quantity


async def _book(client: AsyncClient, slot_id: int, order_id: int, quantity, user):
    return await client.post(
        f"/delivery-slots/{slot_id}/book",
        json={"order_id": order_id, "quantity": quantity},
        headers=auth_header_for(user.id, user.role),
    )


# ============================================
# BOOK
# ============================================

@pytest.mark.asyncio
async def test_book_slot(client: AsyncClient, client_user, product, slot, order):
    response = await _book(client, slot.id, order.id, 6, client_user)

    assert response.status_code == 201
    data = response.json()
    assert data["booking"]["status"] == "TEMPORARY"
    assert Decimal(data["booking"]["quantity"]) == Decimal("6")
    assert Decimal(data["booking"]["price"]) == Decimal("2.00")
    assert 7000 < data["expires_in_seconds"] <= 7200
    assert data["expires_at"] == data["booking"]["expires_at"]
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("6")
    assert await stock_quantity(product.id) == Decimal("4")


@pytest.mark.asyncio
async def test_book_over_capacity(client: AsyncClient, make_order, client_user, other_client_user, slot):
    first = await make_order(client_user)
    second = await make_order(other_client_user)
    assert (await _book(client, slot.id, first.id, 6, client_user)).status_code == 201

    response = await _book(client, slot.id, second.id, 5, other_client_user)

    assert response.status_code == 400
    assert response.json()["code"] == "CAPACITY_EXCEEDED"
    assert "4" in response.json()["detail"]


@pytest.mark.asyncio
async def test_book_duplicate_product(client: AsyncClient, client_user, slot, order):
    assert (await _book(client, slot.id, order.id, 1, client_user)).status_code == 201
    response = await _book(client, slot.id, order.id, 1, client_user)
    assert response.status_code == 400
    assert response.json()["code"] == "DUPLICATE_RESERVATION"


@pytest.mark.asyncio
async def test_book_someone_elses_order(client: AsyncClient, other_client_user, slot, order):
    response = await _book(client, slot.id, order.id, 1, other_client_user)
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_book_missing_slot(client: AsyncClient, client_user, order):
    response = await _book(client, 999999, order.id, 1, client_user)
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_book_requires_auth(client: AsyncClient, slot, order):
    response = await client.post(f"/delivery-slots/{slot.id}/book", json={"order_id": order.id, "quantity": 1})
    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"quantity": 1},
    {"order_id": 1, "quantity": 0},
    {"order_id": 1, "quantity": "lots"},
    {"order_id": 1, "quantity": 1, "price": "0.01"},
])
async def test_book_invalid_body(client: AsyncClient, client_user, slot, body):
    response = await client.post(
        f"/delivery-slots/{slot.id}/book",
        json=body,
        headers=auth_header_for(client_user.id, client_user.role),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


# ============================================
# READ / MODIFY / CANCEL
# ============================================

@pytest.mark.asyncio
async def test_get_booking(client: AsyncClient, client_user, other_client_user, product, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]

    response = await client.get(f"/bookings/{booking_id}", headers=auth_header_for(client_user.id))
    assert response.status_code == 200
    data = response.json()
    assert data["product_name"] == product.name
    assert data["can_modify"] is True
    assert Decimal(data["total_value"]) == Decimal("6.00")

    response = await client.get(f"/bookings/{booking_id}", headers=auth_header_for(other_client_user.id))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_patch_booking_quantity(client: AsyncClient, client_user, product, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]

    response = await client.patch(
        f"/bookings/{booking_id}",
        json={"quantity": 8},
        headers=auth_header_for(client_user.id),
    )
    assert response.status_code == 200
    assert Decimal(response.json()["quantity"]) == Decimal("8")
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("8")

    response = await client.patch(
        f"/bookings/{booking_id}",
        json={"quantity": 11},
        headers=auth_header_for(client_user.id),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "CAPACITY_EXCEEDED"
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("8")


@pytest.mark.asyncio
async def test_patch_rejects_identity_fields(client: AsyncClient, client_user, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]
    for body in ({"order_id": 42}, {"price": "0.01"}, {}):
        response = await client.patch(
            f"/bookings/{booking_id}", json=body, headers=auth_header_for(client_user.id)
        )
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_patch_status_by_producer(client: AsyncClient, client_user, producer_user, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]
    producer_headers = auth_header_for(producer_user.id, producer_user.role)

    response = await client.patch(f"/bookings/{booking_id}", json={"quantity": 1}, headers=producer_headers)
    assert response.status_code == 403

    response = await client.patch(f"/bookings/{booking_id}", json={"status": "CONFIRMED"}, headers=producer_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"
    assert response.json()["expires_at"] is None


@pytest.mark.asyncio
async def test_delete_booking_twice(client: AsyncClient, client_user, product, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]

    response = await client.delete(f"/bookings/{booking_id}", headers=auth_header_for(client_user.id))
    assert response.status_code == 204
    assert (await load(DeliverySlot, slot.id)).reserved == Decimal("0")
    assert await stock_quantity(product.id) == Decimal("10")

    response = await client.delete(f"/bookings/{booking_id}", headers=auth_header_for(client_user.id))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_booking_by_stranger(client: AsyncClient, client_user, other_client_user, slot, order):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]
    response = await client.delete(f"/bookings/{booking_id}", headers=auth_header_for(other_client_user.id))
    assert response.status_code == 403


# ============================================
# CLEANUP
# ============================================

async def _expire(session: AsyncSession, booking_id: int) -> None:
    booking = await session.get(Booking, booking_id)
    booking.expires_at = utcnow() - timedelta(minutes=1)
    await session.commit()


@pytest.mark.asyncio
async def test_cleanup_with_internal_key(
    client: AsyncClient, test_session: AsyncSession, client_user, product, slot, order
):
    booking_id = (await _book(client, slot.id, order.id, 3, client_user)).json()["booking"]["id"]
    await _expire(test_session, booking_id)

    response = await client.post("/bookings/cleanup", headers={"X-Internal-Key": TEST_INTERNAL_KEY})

    assert response.status_code == 200
    data = response.json()
    assert data["cleaned"] == 1
    assert data["failed"] == 0
    assert data["details"][0]["booking_id"] == booking_id
    assert await stock_quantity(product.id) == Decimal("10")


@pytest.mark.asyncio
async def test_cleanup_access(client: AsyncClient, client_user, admin_user):
    response = await client.post("/bookings/cleanup")
    assert response.status_code == 401

    response = await client.post("/bookings/cleanup", headers=auth_header_for(client_user.id))
    assert response.status_code == 403

    response = await client.post("/bookings/cleanup", headers={"X-Internal-Key": "wrong"})
    assert response.status_code == 403

    response = await client.post("/bookings/cleanup", headers=auth_header_for(admin_user.id, admin_user.role))
    assert response.status_code == 200
    assert response.json()["cleaned"] == 0
