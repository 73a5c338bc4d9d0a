"""Delivery slots and the bookings held against them."""
from sqlalchemy import (
    ForeignKey, DateTime, DECIMAL, Numeric, String, Boolean, Index, CheckConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from farmslot.app.core.base import Base
from farmslot.app.core.constants import utcnow


class DeliverySlot(Base):
    """A dated delivery opportunity for one product with finite capacity."""
    __tablename__ = 'delivery_slots'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    date: Mapped[datetime] = mapped_column(DateTime)
    max_capacity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    # sum of quantities of all non-cancelled bookings on this slot
    reserved: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"))
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('reserved >= 0', name='reserved_non_negative'),
        CheckConstraint('reserved <= max_capacity', name='reserved_within_capacity'),
        Index('ix_delivery_slots_product_date', 'product_id', 'date'),
        Index('ix_delivery_slots_date', 'date'),
    )


class Booking(Base):
    """A hold of slot capacity and product stock on behalf of an order."""
    __tablename__ = 'bookings'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey('delivery_slots.id', ondelete='CASCADE'))
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'))
    # Copied from the slot so the database can enforce one active booking per product per order
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    # Snapshot of product.price at reservation time; never re-derived
    price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    status: Mapped[str] = mapped_column(String(20), default='TEMPORARY')
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('quantity > 0', name='quantity_positive'),
        Index('ix_bookings_slot_status', 'slot_id', 'status'),
        Index('ix_bookings_order_status', 'order_id', 'status'),
        Index('ix_bookings_status_expires', 'status', 'expires_at'),  # reaper scan
        Index(
            'uq_bookings_active_order_product',
            'order_id', 'product_id',
            unique=True,
            postgresql_where=text("status <> 'CANCELLED'"),
            sqlite_where=text("status <> 'CANCELLED'"),
        ),
    )
