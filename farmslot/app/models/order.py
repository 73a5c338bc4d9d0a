from sqlalchemy import ForeignKey, DateTime, DECIMAL, Numeric, String, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from farmslot.app.core.base import Base
from farmslot.app.core.constants import utcnow


class Order(Base):
    __tablename__ = 'orders'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'))
    status: Mapped[str] = mapped_column(String(20), default='DRAFT')
    # Derived from items and active bookings; written only by the order total synchronizer
    total: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    checked_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_orders_user_id', 'user_id'),
        Index('ix_orders_user_status', 'user_id', 'status'),
    )


class OrderItem(Base):
    """Standard (non-slotted) line item; its quantity has left the stock counter."""
    __tablename__ = 'order_items'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'))
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))
    price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))  # snapshot at add time

    __table_args__ = (
        CheckConstraint('quantity > 0', name='quantity_positive'),
        Index('ix_order_items_order_id', 'order_id'),
    )
