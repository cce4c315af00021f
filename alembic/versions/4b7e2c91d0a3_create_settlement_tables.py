"""create_settlement_tables

Revision ID: 4b7e2c91d0a3
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4b7e2c91d0a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')

order_status = sa.Enum(
    'pending', 'paid', 'processing', 'shipped', 'delivered',
    'cancelled', 'rejected', 'failed', 'returned',
    name='store_order_status_enum',
)
movement_type = sa.Enum(
    'sale', 'restock', 'adjustment', name='store_stock_movement_type_enum'
)
hmac_result = sa.Enum(
    'valid', 'invalid', 'fallback_used', name='hmac_validation_result_enum'
)
preference_status = sa.Enum(
    'pending', 'active', name='mercadopago_preference_status_enum'
)


def upgrade() -> None:
    """Upgrade schema - Add store stock and Mercado Pago settlement tables."""

    # Catalog
    op.create_table(
        'store_products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('stock', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('stock >= 0', name='product_non_negative_stock'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
    )
    op.create_table(
        'store_product_variants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('attributes', json_type, nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('stock', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('stock >= 0', name='variant_non_negative_stock'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['store_products.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
    )
    op.create_index(
        'ix_store_product_variants_product_id',
        'store_product_variants',
        ['product_id'],
    )

    # Orders
    op.create_table(
        'store_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', order_status, server_default='pending', nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('stock_deducted', sa.Boolean(), server_default='0', nullable=False),
        sa.Column('stock_deducted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stock_cycle', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_store_orders_user_id', 'store_orders', ['user_id'])
    op.create_index('ix_store_orders_payment_id', 'store_orders', ['payment_id'])

    op.create_table(
        'store_order_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=True),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('quantity > 0', name='order_item_positive_quantity'),
        sa.CheckConstraint(
            '(product_id IS NULL) <> (variant_id IS NULL)',
            name='order_item_single_stock_target',
        ),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id']),
        sa.ForeignKeyConstraint(['variant_id'], ['store_product_variants.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_store_order_items_order_id', 'store_order_items', ['order_id'])

    # Stock audit ledger
    op.create_table(
        'store_stock_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('old_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column('change', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('movement_type', movement_type, nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=True),
        sa.Column('order_item_id', sa.Uuid(), nullable=True),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('stock_cycle', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'order_item_id',
            'movement_type',
            'stock_cycle',
            name='unique_stock_log_item_movement_cycle',
        ),
    )
    op.create_index('ix_store_stock_logs_product_id', 'store_stock_logs', ['product_id'])
    op.create_index('ix_store_stock_logs_order_id', 'store_stock_logs', ['order_id'])

    # Mercado Pago
    op.create_table(
        'mercadopago_preferences',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('preference_id', sa.String(length=128), nullable=False),
        sa.Column('external_reference', sa.String(length=128), nullable=True),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('status', preference_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_mercadopago_preferences_preference_id',
        'mercadopago_preferences',
        ['preference_id'],
        unique=True,
    )
    op.create_index(
        'ix_mercadopago_preferences_external_reference',
        'mercadopago_preferences',
        ['external_reference'],
        unique=True,
    )
    op.create_index(
        'ix_mercadopago_preferences_order_id', 'mercadopago_preferences', ['order_id']
    )

    op.create_table(
        'mercadopago_payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=False),
        sa.Column('preference_id', sa.String(length=128), nullable=True),
        sa.Column('external_reference', sa.String(length=128), nullable=True),
        sa.Column('order_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('status_detail', sa.String(length=64), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency_id', sa.String(length=8), nullable=True),
        sa.Column('payment_method_id', sa.String(length=64), nullable=True),
        sa.Column('installments', sa.Integer(), nullable=True),
        sa.Column('date_created', sa.DateTime(timezone=True), nullable=True),
        sa.Column('date_approved', sa.DateTime(timezone=True), nullable=True),
        sa.Column('date_last_updated', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_data', json_type, nullable=True),
        sa.Column(
            'requires_manual_verification',
            sa.Boolean(),
            server_default='0',
            nullable=False,
        ),
        sa.Column('hmac_validation_result', hmac_result, nullable=False),
        sa.Column('hmac_failure_reason', sa.Text(), nullable=True),
        sa.Column('hmac_fallback_used', sa.Boolean(), server_default='0', nullable=False),
        sa.Column('verification_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('webhook_request_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_mercadopago_payments_payment_id',
        'mercadopago_payments',
        ['payment_id'],
        unique=True,
    )
    op.create_index(
        'ix_mercadopago_payments_preference_id', 'mercadopago_payments', ['preference_id']
    )
    op.create_index(
        'ix_mercadopago_payments_external_reference',
        'mercadopago_payments',
        ['external_reference'],
    )
    op.create_index('ix_mercadopago_payments_order_id', 'mercadopago_payments', ['order_id'])


def downgrade() -> None:
    """Downgrade schema - Drop settlement tables."""
    op.drop_table('mercadopago_payments')
    op.drop_table('mercadopago_preferences')
    op.drop_table('store_stock_logs')
    op.drop_table('store_order_items')
    op.drop_table('store_orders')
    op.drop_table('store_product_variants')
    op.drop_table('store_products')

    bind = op.get_bind()
    for enum in (preference_status, hmac_result, movement_type, order_status):
        enum.drop(bind, checkfirst=True)
