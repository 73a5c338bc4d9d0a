"""
Shared constants for the reservation engine.
"""
from datetime import datetime, timezone
from decimal import Decimal

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------
ROLE_CLIENT = "CLIENT"
ROLE_PRODUCER = "PRODUCER"
ROLE_ADMIN = "ADMIN"
VALID_ROLES = (ROLE_CLIENT, ROLE_PRODUCER, ROLE_ADMIN)

# ---------------------------------------------------------------------------
# Booking statuses
# ---------------------------------------------------------------------------
BOOKING_TEMPORARY = "TEMPORARY"
BOOKING_PENDING = "PENDING"
BOOKING_CONFIRMED = "CONFIRMED"
BOOKING_CANCELLED = "CANCELLED"
VALID_BOOKING_STATUSES = (BOOKING_TEMPORARY, BOOKING_PENDING, BOOKING_CONFIRMED, BOOKING_CANCELLED)

# Statuses that hold slot capacity and stock
ACTIVE_BOOKING_STATUSES = (BOOKING_TEMPORARY, BOOKING_PENDING, BOOKING_CONFIRMED)

# Statuses in which the order owner may still change a booking
OWNER_MODIFIABLE_BOOKING_STATUSES = (BOOKING_TEMPORARY, BOOKING_PENDING)

BOOKING_TRANSITIONS = {
    BOOKING_TEMPORARY: (BOOKING_PENDING, BOOKING_CONFIRMED, BOOKING_CANCELLED),
    BOOKING_PENDING: (BOOKING_CONFIRMED, BOOKING_CANCELLED),
    BOOKING_CONFIRMED: (BOOKING_CANCELLED,),
    BOOKING_CANCELLED: (),
}

# Reasons recorded when a booking is cancelled (metrics label + notification)
CANCEL_REASON_CLIENT = "client"
CANCEL_REASON_EXPIRED = "expired"
CANCEL_REASON_FORCED = "forced"
CANCEL_REASON_ORDER = "order_cancelled"
CANCEL_REASON_SLOT_CLEANUP = "slot_cleanup"

# ---------------------------------------------------------------------------
# Order statuses
# ---------------------------------------------------------------------------
ORDER_DRAFT = "DRAFT"
ORDER_PENDING = "PENDING"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_SHIPPED = "SHIPPED"
ORDER_DELIVERED = "DELIVERED"
ORDER_CANCELLED = "CANCELLED"
VALID_ORDER_STATUSES = [
    ORDER_DRAFT, ORDER_PENDING, ORDER_CONFIRMED, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED,
]

# Only a cart that has not been checked out accepts new reservations or items
MODIFIABLE_ORDER_STATUSES = (ORDER_DRAFT,)

# Orders a client may still cancel on their own
CLIENT_CANCELLABLE_ORDER_STATUSES = (ORDER_DRAFT, ORDER_PENDING)

# ---------------------------------------------------------------------------
# Stock history movement types
# ---------------------------------------------------------------------------
STOCK_BOOKING_HOLD = "BOOKING_HOLD"
STOCK_BOOKING_RELEASE = "BOOKING_RELEASE"
STOCK_BOOKING_ADJUST = "BOOKING_ADJUST"
STOCK_ORDER_ITEM = "ORDER_ITEM"
STOCK_ORDER_ITEM_RETURN = "ORDER_ITEM_RETURN"

# ---------------------------------------------------------------------------
# Decimal helpers
# ---------------------------------------------------------------------------
ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")
QUANTITY_STEP = Decimal("0.001")

# ---------------------------------------------------------------------------
# Slot limits
# ---------------------------------------------------------------------------
MAX_SLOT_CAPACITY = Decimal("10000")
MAX_SLOTS_PAGE_SIZE = 50


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
