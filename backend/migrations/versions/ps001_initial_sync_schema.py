"""initial sync schema

Revision ID: ps001
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the tenant root, the security event log and one table per
synchronizable collection. Every collection carries the same bookkeeping:
- store_id: owning tenant (NOT NULL, FK stores.id)
- sync_version: compare-and-set version (version_id_col)
- last_synced_at: pull cursor timestamp
- deleted: tombstone flag
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'ps001'
down_revision = None
branch_labels = None
depends_on = None


def _bookkeeping():
    return [
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('store_id', sa.String(length=32), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('sync_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def _create_collection(table, *columns, indexes=()):
    op.create_table(table, *_bookkeeping(), *columns, sa.PrimaryKeyConstraint('id'))
    op.create_index(f'ix_{table}_store_id', table, ['store_id'])
    op.create_index(f'ix_{table}_last_synced_at', table, ['last_synced_at'])
    op.create_index(f'ix_{table}_store_pull', table, ['store_id', 'last_synced_at', 'id'])
    for name, cols in indexes:
        op.create_index(name, table, cols)


def upgrade():
    # ============================================================================
    # stores: tenant root
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sync_clock', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_stores_code', 'stores', ['code'], unique=True)
    op.create_index('ix_stores_is_active', 'stores', ['is_active'])

    # ============================================================================
    # security_events: append-only audit log
    # ============================================================================
    op.create_table(
        'security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.String(length=32), nullable=True),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('resource', sa.String(length=128), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    for col in ('store_id', 'user_id', 'event_type', 'success', 'occurred_at'):
        op.create_index(f'ix_security_events_{col}', 'security_events', [col])
    op.create_index('ix_security_events_store_occurred', 'security_events', ['store_id', 'occurred_at'])

    # ============================================================================
    # synchronizable collections
    # ============================================================================
    _create_collection(
        'products',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('category_id', sa.String(length=32), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('cost_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        indexes=[('ix_products_store_sku', ['store_id', 'sku'])],
    )

    _create_collection(
        'categories',
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('color', sa.String(length=16), nullable=True),
        sa.Column('icon', sa.String(length=64), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        indexes=[('ix_categories_store_name', ['store_id', 'name'])],
    )

    _create_collection(
        'customers',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_order_date', sa.DateTime(), nullable=True),
    )

    _create_collection(
        'employees',
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='cashier'),
        sa.Column('pin', sa.String(length=4), nullable=True),
        sa.Column('hourly_rate_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        indexes=[('ix_employees_store_pin', ['store_id', 'pin'])],
    )

    _create_collection(
        'credits',
        sa.Column('customer_id', sa.String(length=32), nullable=False),
        sa.Column('sale_id', sa.String(length=32), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('amount_paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        indexes=[
            ('ix_credits_store_sale', ['store_id', 'sale_id']),
            ('ix_credits_store_status_due', ['store_id', 'status', 'due_date']),
        ],
    )

    _create_collection(
        'sales',
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed'),
        sa.Column('employee_id', sa.String(length=32), nullable=True),
        sa.Column('customer_id', sa.String(length=32), nullable=True),
        sa.Column('shift_id', sa.String(length=32), nullable=True),
        indexes=[('ix_sales_store_customer', ['store_id', 'customer_id'])],
    )

    _create_collection(
        'shifts',
        sa.Column('employee_id', sa.String(length=32), nullable=False),
        sa.Column('date', sa.String(length=10), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='scheduled'),
        sa.Column('notes', sa.Text(), nullable=True),
    )

    _create_collection(
        'stock_movements',
        sa.Column('product_id', sa.String(length=32), nullable=False),
        sa.Column('movement_type', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.String(length=32), nullable=True),
        indexes=[('ix_stock_movements_store_product', ['store_id', 'product_id'])],
    )


def downgrade():
    for table in (
        'stock_movements', 'shifts', 'sales', 'credits',
        'employees', 'customers', 'categories', 'products',
    ):
        op.drop_table(table)
    op.drop_table('security_events')
    op.drop_table('stores')
