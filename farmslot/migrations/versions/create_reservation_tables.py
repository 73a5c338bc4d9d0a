"""create reservation tables

Revision ID: create_reservation_tables
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'create_reservation_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_BOOKING = sa.text("status <> 'CANCELLED'")


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_role', 'users', ['role'])

    op.create_table(
        'producers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('company_name', sa.String(255), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_producers_user_id_users', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name='pk_producers'),
        sa.UniqueConstraint('user_id', name='uq_producers_user_id'),
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('producer_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('unit', sa.String(20), nullable=False),
        sa.Column('available', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(
            ['producer_id'], ['producers.id'], name='fk_products_producer_id_producers', ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
    )
    op.create_index('ix_products_producer_id', 'products', ['producer_id'])
    op.create_index('ix_products_producer_available', 'products', ['producer_id', 'available'])

    op.create_table(
        'stocks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('quantity >= 0', name='ck_stocks_quantity_non_negative'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_stocks_product_id_products', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name='pk_stocks'),
        sa.UniqueConstraint('product_id', name='uq_stocks_product_id'),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('total', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('checked_out_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_orders_user_id_users', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_user_status', 'orders', ['user_id', 'status'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('price', sa.DECIMAL(10, 2), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_items_order_id_orders', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_order_items_product_id_products', ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'stock_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('booking_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_stock_history_product_id_products', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_stock_history_order_id_orders', ondelete='SET NULL'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_stock_history'),
    )
    op.create_index('ix_stock_history_product_date', 'stock_history', ['product_id', 'date'])

    op.create_table(
        'delivery_slots',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('max_capacity', sa.Numeric(12, 3), nullable=False),
        sa.Column('reserved', sa.Numeric(12, 3), nullable=False),
        sa.Column('is_available', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('reserved >= 0', name='ck_delivery_slots_reserved_non_negative'),
        sa.CheckConstraint('reserved <= max_capacity', name='ck_delivery_slots_reserved_within_capacity'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_delivery_slots_product_id_products', ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_delivery_slots'),
    )
    op.create_index('ix_delivery_slots_product_date', 'delivery_slots', ['product_id', 'date'])
    op.create_index('ix_delivery_slots_date', 'delivery_slots', ['date'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('slot_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('price', sa.DECIMAL(10, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_bookings_quantity_positive'),
        sa.ForeignKeyConstraint(
            ['slot_id'], ['delivery_slots.id'], name='fk_bookings_slot_id_delivery_slots', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_bookings_order_id_orders', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_bookings_product_id_products', ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_bookings'),
    )
    op.create_index('ix_bookings_slot_status', 'bookings', ['slot_id', 'status'])
    op.create_index('ix_bookings_order_status', 'bookings', ['order_id', 'status'])
    op.create_index('ix_bookings_status_expires', 'bookings', ['status', 'expires_at'])
    # One live reservation per product per order
    op.create_index(
        'uq_bookings_active_order_product',
        'bookings',
        ['order_id', 'product_id'],
        unique=True,
        postgresql_where=ACTIVE_BOOKING,
        sqlite_where=ACTIVE_BOOKING,
    )


def downgrade() -> None:
    op.drop_index('uq_bookings_active_order_product', table_name='bookings')
    op.drop_index('ix_bookings_status_expires', table_name='bookings')
    op.drop_index('ix_bookings_order_status', table_name='bookings')
    op.drop_index('ix_bookings_slot_status', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_delivery_slots_date', table_name='delivery_slots')
    op.drop_index('ix_delivery_slots_product_date', table_name='delivery_slots')
    op.drop_table('delivery_slots')
    op.drop_index('ix_stock_history_product_date', table_name='stock_history')
    op.drop_table('stock_history')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_user_status', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_table('orders')
    op.drop_table('stocks')
    op.drop_index('ix_products_producer_available', table_name='products')
    op.drop_index('ix_products_producer_id', table_name='products')
    op.drop_table('products')
    op.drop_table('producers')
    op.drop_index('ix_users_role', table_name='users')
    op.drop_table('users')
