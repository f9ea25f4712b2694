"""
Alembic migration: Create order, courier and delivery session tables.

Creates couriers, orders, the append-only order_status_history and
delivery_sessions. A partial unique index allows at most one open
delivery session per courier.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ('PENDING', 'READY', 'OUT_FOR_DELIVERY', 'DELIVERED', 'CANCELLED')
PAYMENT_METHODS = ('PREPAID', 'CASH_ON_DELIVERY')
ACTOR_ROLES = ('CUSTOMER', 'OPERATOR', 'COURIER', 'SYSTEM')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.func.now(),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(),
            nullable=False,
            server_default=sa.func.now(),
            comment='Timestamp when record was last updated',
        ),
    ]


def _version() -> sa.Column:
    return sa.Column(
        'version',
        sa.Integer(),
        nullable=False,
        server_default='1',
        comment='Optimistic concurrency counter',
    )


def _enum(values: tuple, name: str, length: int) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=length)


def upgrade() -> None:
    """
    Create the dispatch schema.

    Couriers come first since orders and delivery sessions reference them.
    """
    op.create_table(
        'couriers',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(32), nullable=False, unique=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column(
            'vehicle_type',
            sa.String(32),
            nullable=False,
            server_default='bike',
            comment='bike, scooter or car',
        ),
        sa.Column('vehicle_number', sa.String(32), nullable=True),
        sa.Column(
            'push_endpoint',
            sa.String(512),
            nullable=True,
            comment='SNS platform endpoint ARN',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('location_updated_at', sa.DateTime(), nullable=True),
        _version(),
        *_timestamps(),
        comment='Delivery couriers',
    )
    op.create_index('ix_couriers_available', 'couriers', ['available'])
    op.create_index('ix_couriers_available_active', 'couriers', ['available', 'is_active'])
    op.create_index('ix_couriers_location', 'couriers', ['latitude', 'longitude'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            'order_number',
            sa.String(20),
            nullable=False,
            unique=True,
            comment='Human-readable order number',
        ),
        sa.Column(
            'customer_id',
            sa.String(64),
            nullable=False,
            comment='Customer who placed the order',
        ),
        sa.Column('customer', sa.JSON(), nullable=False, comment='Customer contact snapshot'),
        sa.Column(
            'items',
            sa.JSON(),
            nullable=False,
            comment='Ordered line items with price snapshots',
        ),
        sa.Column('items_total', sa.Numeric(10, 2), nullable=False),
        sa.Column('delivery_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('tax', sa.Numeric(10, 2), nullable=False),
        sa.Column('discount', sa.Numeric(10, 2), nullable=False, server_default='0.00'),
        sa.Column('final_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column(
            'delivery_address',
            sa.JSON(),
            nullable=False,
            comment='Delivery address with coordinates',
        ),
        sa.Column(
            'status',
            _enum(ORDER_STATUSES, 'order_status', 32),
            nullable=False,
            server_default='PENDING',
            comment='Current order status',
        ),
        sa.Column(
            'payment_method',
            _enum(PAYMENT_METHODS, 'payment_method', 32),
            nullable=False,
            comment='Payment method',
        ),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column(
            'courier_id',
            sa.Uuid(as_uuid=True),
            sa.ForeignKey('couriers.id', ondelete='SET NULL'),
            nullable=True,
            comment='Assigned courier',
        ),
        sa.Column('courier_snapshot', sa.JSON(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('cash_expected_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('cash_collected_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('cash_collected_at', sa.DateTime(), nullable=True),
        sa.Column('cash_is_settled', sa.Boolean(), nullable=False, server_default=sa.false()),
        _version(),
        *_timestamps(),
        sa.CheckConstraint('final_amount >= 0', name='ck_orders_final_amount_positive'),
        comment='Customer orders',
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_courier_id', 'orders', ['courier_id'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_courier_status', 'orders', ['courier_id', 'status'])
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id',
            sa.Uuid(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
            comment='Parent order identifier',
        ),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', _enum(ORDER_STATUSES, 'order_status', 32), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('actor_id', sa.String(64), nullable=False),
        sa.Column('actor_role', _enum(ACTOR_ROLES, 'actor_role', 16), nullable=False),
        sa.Column('note', sa.String(500), nullable=True),
        sa.UniqueConstraint('order_id', 'sequence', name='uq_order_status_history_seq'),
        comment='Order status change history',
    )

    op.create_table(
        'delivery_sessions',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            'courier_id',
            sa.Uuid(as_uuid=True),
            sa.ForeignKey('couriers.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('courier_name', sa.String(255), nullable=False),
        sa.Column('session_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('opening_float', sa.Numeric(10, 2), nullable=False, server_default='0.00'),
        sa.Column('collections', sa.JSON(), nullable=False),
        sa.Column('total_collected', sa.Numeric(10, 2), nullable=False, server_default='0.00'),
        sa.Column('total_to_deposit', sa.Numeric(10, 2), nullable=False, server_default='0.00'),
        sa.Column('is_settled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.Column('settled_by', sa.String(64), nullable=True),
        sa.Column('deposited_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('discrepancy', sa.Numeric(10, 2), nullable=True),
        sa.Column('discrepancy_reason', sa.String(500), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _version(),
        *_timestamps(),
        comment='Courier delivery sessions and cash settlement',
    )
    op.create_index('ix_delivery_sessions_courier_id', 'delivery_sessions', ['courier_id'])
    op.create_index('ix_delivery_sessions_session_date', 'delivery_sessions', ['session_date'])
    op.create_index('ix_delivery_sessions_is_settled', 'delivery_sessions', ['is_settled'])
    op.create_index(
        'ix_delivery_sessions_settled_end',
        'delivery_sessions',
        ['is_settled', 'end_time'],
    )
    op.create_index(
        'uq_delivery_sessions_open_courier',
        'delivery_sessions',
        ['courier_id'],
        unique=True,
        postgresql_where=sa.text('end_time IS NULL'),
        sqlite_where=sa.text('end_time IS NULL'),
    )


def downgrade() -> None:
    """Drop the dispatch schema in reverse dependency order."""
    op.drop_index('uq_delivery_sessions_open_courier', table_name='delivery_sessions')
    op.drop_index('ix_delivery_sessions_settled_end', table_name='delivery_sessions')
    op.drop_index('ix_delivery_sessions_is_settled', table_name='delivery_sessions')
    op.drop_index('ix_delivery_sessions_session_date', table_name='delivery_sessions')
    op.drop_index('ix_delivery_sessions_courier_id', table_name='delivery_sessions')
    op.drop_table('delivery_sessions')

    op.drop_table('order_status_history')

    op.drop_index('ix_orders_customer_created', table_name='orders')
    op.drop_index('ix_orders_courier_status', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_courier_id', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_couriers_location', table_name='couriers')
    op.drop_index('ix_couriers_available_active', table_name='couriers')
    op.drop_index('ix_couriers_available', table_name='couriers')
    op.drop_table('couriers')
