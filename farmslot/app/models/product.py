from sqlalchemy import (
    String, ForeignKey, DECIMAL, Numeric, Text, Boolean, Index, DateTime, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from farmslot.app.core.base import Base
from farmslot.app.core.constants import utcnow


class Product(Base):
    __tablename__ = 'products'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    producer_id: Mapped[int] = mapped_column(ForeignKey('producers.id', ondelete='CASCADE'))
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(DECIMAL(10, 2))
    unit: Mapped[str] = mapped_column(String(20), default='kg')
    available: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index('ix_products_producer_id', 'producer_id'),
        Index('ix_products_producer_available', 'producer_id', 'available'),
    )


class Stock(Base):
    """Sellable units of a product not held by any active booking or order item."""
    __tablename__ = 'stocks'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'), unique=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('quantity >= 0', name='quantity_non_negative'),
    )


class StockHistory(Base):
    """Append-only journal of every stock movement made by the ledger."""
    __tablename__ = 'stock_history'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id', ondelete='CASCADE'))
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3))  # signed: negative leaves stock
    type: Mapped[str] = mapped_column(String(30))
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey('orders.id', ondelete='SET NULL'), nullable=True)
    booking_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_stock_history_product_date', 'product_id', 'date'),
    )
