"""
Per-operation authorization policies for bookings.

Each policy is a pure function of the caller's role and their relationship to
the booking, so it can be tested without HTTP or a database. The only I/O here
is resolving that relationship.
"""
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from farmslot.app.core.auth import Caller
from farmslot.app.core.constants import (
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_TRANSITIONS,
    OWNER_MODIFIABLE_BOOKING_STATUSES,
    ROLE_ADMIN,
    ROLE_PRODUCER,
)
from farmslot.app.models.producer import Producer
from farmslot.app.models.product import Product


class Relationship(str, Enum):
    OWNER = "owner"          # placed the order the booking belongs to
    PRODUCER = "producer"    # owns the booked product
    NONE = "none"


async def owns_product(session: AsyncSession, user_id: int, product_id: int) -> bool:
    """True if the user is the producer behind the product."""
    result = await session.execute(
        select(Product.id)
        .join(Producer, Producer.id == Product.producer_id)
        .where(Product.id == product_id, Producer.user_id == user_id)
    )
    return result.scalar_one_or_none() is not None


async def resolve_relationship(
    session: AsyncSession,
    caller: Caller,
    order_user_id: int,
    product_id: int,
) -> Relationship:
    if caller.id == order_user_id:
        return Relationship.OWNER
    if caller.role == ROLE_PRODUCER and await owns_product(session, caller.id, product_id):
        return Relationship.PRODUCER
    return Relationship.NONE


def can_read(role: str, relationship: Relationship) -> bool:
    return role == ROLE_ADMIN or relationship != Relationship.NONE


def can_modify(role: str, relationship: Relationship, status: str) -> bool:
    """Whether the caller may touch the booking through PATCH at all."""
    if role == ROLE_ADMIN:
        return status != BOOKING_CANCELLED
    if relationship == Relationship.NONE:
        return False
    return status in OWNER_MODIFIABLE_BOOKING_STATUSES


def can_change_quantity(role: str, relationship: Relationship) -> bool:
    """Producers may move a booking through its lifecycle but not resize a client's hold."""
    return role == ROLE_ADMIN or relationship == Relationship.OWNER


def is_valid_transition(current: str, target: str) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, ())


def can_set_status(role: str, relationship: Relationship, current: str, target: str) -> bool:
    if role == ROLE_ADMIN:
        return True
    if current == BOOKING_CONFIRMED:
        return False
    if relationship == Relationship.PRODUCER:
        return True
    if relationship == Relationship.OWNER:
        # a TEMPORARY hold leaves expiry only at checkout or through the producer
        return target == BOOKING_CANCELLED
    return False


def can_cancel(role: str, relationship: Relationship, status: str) -> bool:
    if role == ROLE_ADMIN:
        return True
    if status == BOOKING_CONFIRMED:
        return False
    return relationship != Relationship.NONE
