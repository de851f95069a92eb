"""storefront initial schema

Revision ID: sf0001initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the storefront schema from scratch:
- users, session_tokens: accounts and hashed bearer sessions
- products: catalog with inventory counters (stock >= 0 enforced by CHECK)
- inventory_mutations: idempotency ledger for sell/restock
- orders, order_lines, order_sequences: priced order snapshots and the
  atomic per-day order number counter
- payments, payment_events, webhook_events: payment attempts, their
  audit trail and processed provider events
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'sf0001initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # users / session_tokens
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('login_count', sa.Integer(), nullable=False),
        _timestamp('created_at'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role', 'users', ['role'])

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        _timestamp('created_at'),
        _timestamp('last_used_at'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])
    op.create_index('ix_session_tokens_is_revoked', 'session_tokens', ['is_revoked'])
    op.create_index('ix_session_tokens_user_active', 'session_tokens', ['user_id', 'is_revoked'])

    # ============================================================================
    # products / inventory_mutations
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False),
        sa.Column('stock_in', sa.Integer(), nullable=False),
        sa.Column('stock_out', sa.Integer(), nullable=False),
        sa.Column('sold', sa.Integer(), nullable=False),
        sa.Column('low_stock_alert', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_featured', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        sa.CheckConstraint('price_cents >= 0', name='ck_products_price_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_category', 'products', ['category'])
    op.create_index('ix_products_stock', 'products', ['stock'])
    op.create_index('ix_products_is_active', 'products', ['is_active'])
    op.create_index('ix_products_is_featured', 'products', ['is_featured'])
    op.create_index('ix_products_category_active', 'products', ['category', 'is_active'])

    op.create_table(
        'inventory_mutations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('stock_after', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_inventory_mutations_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_mutations_product_id', 'inventory_mutations', ['product_id'])
    op.create_index('ix_inventory_mutations_kind', 'inventory_mutations', ['kind'])
    op.create_index('ix_inventory_mutations_product_created', 'inventory_mutations', ['product_id', 'created_at'])

    # ============================================================================
    # orders / order_lines / order_sequences
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('tax_cents', sa.Integer(), nullable=False),
        sa.Column('shipping_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('inventory_committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attention_reason', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.CheckConstraint('total_cents >= 0', name='ck_orders_total_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])
    op.create_index('ix_orders_status_payment', 'orders', ['status', 'payment_status'])

    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('quantity >= 1', name='ck_order_lines_quantity_positive'),
        sa.CheckConstraint('unit_price_cents >= 0', name='ck_order_lines_price_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])
    op.create_index('ix_order_lines_product_id', 'order_lines', ['product_id'])

    op.create_table(
        'order_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date_key', sa.String(length=8), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False),
        _timestamp('updated_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('date_key', name='uq_order_sequences_date_key'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # payments / payment_events / webhook_events
    # ============================================================================
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_ref', sa.String(length=128), nullable=True),
        sa.Column('client_secret', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('mobile_number', sa.String(length=32), nullable=True),
        sa.Column('card_holder', sa.String(length=128), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_payments_provider_ref'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_payment_method', 'payments', ['payment_method'])
    op.create_index('ix_payments_provider', 'payments', ['provider'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    # orders.payment_id -> payments.id closes the cycle
    with op.batch_alter_table('orders') as batch_op:
        batch_op.create_foreign_key('fk_orders_payment_id', 'payments', ['payment_id'], ['id'])

    op.create_table(
        'payment_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('from_status', sa.String(length=16), nullable=True),
        sa.Column('to_status', sa.String(length=16), nullable=True),
        sa.Column('source', sa.String(length=16), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        _timestamp('occurred_at'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payment_events_payment_id', 'payment_events', ['payment_id'])
    op.create_index('ix_payment_events_order_id', 'payment_events', ['order_id'])
    op.create_index('ix_payment_events_event_type', 'payment_events', ['event_type'])
    op.create_index('ix_payment_events_occurred_at', 'payment_events', ['occurred_at'])
    op.create_index('ix_payment_events_payment_occurred', 'payment_events', ['payment_id', 'occurred_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('provider_ref', sa.String(length=128), nullable=True),
        _timestamp('received_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_webhook_events_provider_ref', 'webhook_events', ['provider_ref'])


def downgrade():
    op.drop_table('webhook_events')
    op.drop_table('payment_events')
    with op.batch_alter_table('orders') as batch_op:
        batch_op.drop_constraint('fk_orders_payment_id', type_='foreignkey')
    op.drop_table('payments')
    op.drop_table('order_sequences')
    op.drop_table('order_lines')
    op.drop_table('orders')
    op.drop_table('inventory_mutations')
    op.drop_table('products')
    op.drop_table('session_tokens')
    op.drop_table('users')
