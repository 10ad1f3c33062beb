"""Create storelink schema (stores, credentials, oauth states, mirror, webhook log)

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    - organizations / users: ownership boundary for stores
    - stores: one row per (platform, domain) connection, with lifecycle flags
    - credentials: Fernet-encrypted tokens, one row per store
    - oauth_states: single-use CSRF states bound to a browser session
    - products / product_variants / orders / order_items: local mirror
    - webhook_logs: one row per inbound delivery

WHY:
    Unique constraints carry the idempotency of the mirror: a redelivered
    webhook or a re-run sync lands on the same (store, external id) row.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


platform_enum = postgresql.ENUM('shopify', 'squarespace', name='platformenum', create_type=False)
sync_status_enum = postgresql.ENUM(
    'idle', 'queued', 'running', 'succeeded', 'failed', name='syncstatusenum', create_type=False
)
mapping_source_enum = postgresql.ENUM('auto', 'manual', name='mappingsourceenum', create_type=False)
fulfilment_status_enum = postgresql.ENUM(
    'pending', 'in_production', 'fulfilled', 'cancelled', name='fulfilmentstatusenum', create_type=False
)

ENUMS = (platform_enum, sync_status_enum, mapping_source_enum, fulfilment_status_enum)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    # =========================================================================
    # OWNERSHIP
    # =========================================================================
    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================================
    # TENANTS AND CREDENTIALS
    # =========================================================================
    op.create_table(
        'stores',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('uid', sa.String(), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('created_by_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('needs_reauthentication', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('reauthentication_flagged_at', sa.DateTime(), nullable=True),
        sa.Column('disconnected_at', sa.DateTime(), nullable=True),
        sa.Column('products_last_updated_at', sa.DateTime(), nullable=True),
        sa.Column('product_sync_cursor', sa.String(), nullable=True),
        sa.Column('last_sync_status', sync_status_enum, nullable=False, server_default='idle'),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('platform', 'domain', name='uq_stores_platform_domain'),
    )
    op.create_index('ix_stores_uid', 'stores', ['uid'], unique=True)

    op.create_table(
        'credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'store_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False, unique=True,
        ),
        sa.Column('access_token_enc', sa.String(), nullable=False),
        sa.Column('refresh_token_enc', sa.String(), nullable=True),
        sa.Column('access_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('refresh_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('scope', sa.String(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'oauth_states',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('state', sa.String(64), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('session_key', sa.String(), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('return_context', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_oauth_states_state', 'oauth_states', ['state'], unique=True)

    # =========================================================================
    # MIRROR
    # =========================================================================
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description_html', sa.Text(), nullable=True),
        sa.Column('handle', sa.String(), nullable=True),
        sa.Column('vendor', sa.String(), nullable=True),
        sa.Column('product_type', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('option_groups', sa.JSON(), nullable=False),
        sa.Column('fulfilment_active', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
        sa.UniqueConstraint('store_id', 'external_id', name='uq_products_store_external'),
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'])

    op.create_table(
        'product_variants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_variant_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(18, 4), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('selected_options', sa.JSON(), nullable=False),
        sa.Column('fulfilment_active', sa.Boolean(), nullable=False, server_default='false'),
        *_timestamps(),
        sa.UniqueConstraint('product_id', 'external_variant_id', name='uq_variants_product_external'),
    )
    op.create_index('ix_product_variants_product_id', 'product_variants', ['product_id'])
    op.create_index('ix_product_variants_store_id', 'product_variants', ['store_id'])
    op.create_index('ix_product_variants_external_variant_id', 'product_variants', ['external_variant_id'])

    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('subtotal_price', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_discounts', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_shipping', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_tax', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('taxes_included', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('totals_mismatch', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('placed_at', sa.DateTime(), nullable=True),
        sa.Column('fulfilment_status', fulfilment_status_enum, nullable=False, server_default='pending'),
        *_timestamps(),
        sa.UniqueConstraint('store_id', 'external_id', name='uq_orders_store_external'),
    )
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_line_id', sa.String(), nullable=False),
        sa.Column('external_product_id', sa.String(), nullable=True),
        sa.Column('external_variant_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('variant_title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('total_discount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('line_total', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column(
            'product_variant_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('product_variants.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('mapping_source', mapping_source_enum, nullable=True),
        sa.Column('needs_mapping', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(),
        sa.UniqueConstraint('order_id', 'external_line_id', name='uq_order_items_order_line'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    # =========================================================================
    # AUDIT
    # =========================================================================
    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id', ondelete='SET NULL'), nullable=True),
        sa.Column('delivery_id', sa.String(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('payload_enc', sa.Text(), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_webhook_logs_topic', 'webhook_logs', ['topic'])
    op.create_index('ix_webhook_logs_shop_domain', 'webhook_logs', ['shop_domain'])
    op.create_index('ix_webhook_logs_delivery_id', 'webhook_logs', ['delivery_id'])
    op.create_index('ix_webhook_logs_created_at', 'webhook_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('webhook_logs')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('product_variants')
    op.drop_table('products')
    op.drop_table('oauth_states')
    op.drop_table('credentials')
    op.drop_table('stores')
    op.drop_table('users')
    op.drop_table('organizations')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
