"""
Services layer for reservation logic.
Keeps API endpoints thin and the counter bookkeeping testable and reusable.
"""

from farmslot.app.services.reservations import (
    ReservationService,
    BookingNotFoundError,
    OrderNotFoundError,
    OrderNotModifiableError,
    SlotUnavailableError,
    DuplicateReservationError,
    InvalidStatusTransitionError,
    parse_quantity,
)
from farmslot.app.services.inventory import (
    InventoryLedger,
    SlotNotFoundError,
    StockNotFoundError,
    CapacityExceededError,
    InsufficientStockError,
    reconcile_slot_counters,
)
from farmslot.app.services.order_totals import recompute_order_total
from farmslot.app.services.reaper import SweepResult, sweep_expired, run_scheduled_sweep
from farmslot.app.services.delivery_slots import DeliverySlotService
from farmslot.app.services.orders import OrderService
from farmslot.app.services.cache import CacheService

__all__ = [
    # Reservation engine
    "ReservationService",
    "BookingNotFoundError",
    "OrderNotFoundError",
    "OrderNotModifiableError",
    "SlotUnavailableError",
    "DuplicateReservationError",
    "InvalidStatusTransitionError",
    "parse_quantity",
    # Inventory ledger
    "InventoryLedger",
    "SlotNotFoundError",
    "StockNotFoundError",
    "CapacityExceededError",
    "InsufficientStockError",
    "reconcile_slot_counters",
    # Totals
    "recompute_order_total",
    # Reaper
    "SweepResult",
    "sweep_expired",
    "run_scheduled_sweep",
    # Slots and orders
    "DeliverySlotService",
    "OrderService",
    # Coordination
    "CacheService",
]
