from alembic import op
import sqlalchemy as sa

revision = "20261019093000"
down_revision = None

NOW = sa.text("(now() at time zone 'utc')")

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=240), nullable=False),
        sa.Column('brand', sa.String(length=120), nullable=True),
        sa.Column('model', sa.String(length=120), nullable=True),
        sa.Column('image_url', sa.String(length=1024), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        'variants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('sku', sa.String(length=64), nullable=False, unique=True),
        sa.Column('condition', sa.String(length=64), nullable=False, server_default='Sealed'),
        sa.Column('issue_notes', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('ship_class', sa.String(length=32), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        'variant_stock',
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('variants.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('qty_on_hand', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('qty_reserved', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('qty_reserved >= 0', name='ck_variant_stock_reserved_nonneg'),
        sa.CheckConstraint('qty_reserved <= qty_on_hand', name='ck_variant_stock_reserved_le_on_hand'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('customer_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('channel', sa.String(length=32), nullable=False, server_default='WEB'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='PENDING_APPROVAL'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='UNPAID'),
        sa.Column('payment_method', sa.String(length=64), nullable=True),
        sa.Column('shipping_method', sa.String(length=32), nullable=True),
        sa.Column('shipping_region', sa.String(length=32), nullable=True),
        sa.Column('shipping_details', sa.JSON(), nullable=True),
        sa.Column('package', sa.String(length=32), nullable=True),
        sa.Column('shipping_warning', sa.String(length=255), nullable=True),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shipping_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cop_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lalamove_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('priority_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('insurance_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('rush_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='PHP'),
        sa.Column('priority_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('insurance_selected', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_deadline', sa.DateTime(), nullable=True),
        sa.Column('payment_hold', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receipt_url', sa.String(length=1024), nullable=True),
        sa.Column('review_note', sa.Text(), nullable=True),
        sa.Column('cancelled_reason', sa.String(length=32), nullable=True),
        sa.Column('void_note', sa.Text(), nullable=True),
        sa.Column('shipping_status', sa.String(length=32), nullable=False, server_default='NONE'),
        sa.Column('courier', sa.String(length=64), nullable=True),
        sa.Column('tracking_number', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('shipped_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=NOW),
    )
    op.create_index('ix_orders_status_deadline', 'orders', ['status', 'payment_deadline'])
    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('variants.id'), nullable=False, index=True),
        sa.Column('title_snapshot', sa.String(length=255), nullable=False),
        sa.Column('qty_requested', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('condition_snapshot', sa.String(length=64), nullable=True),
        sa.Column('ship_class_snapshot', sa.String(length=32), nullable=True),
        sa.Column('is_cancelled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_reason', sa.String(length=32), nullable=True),
    )
    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'reservation_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('reservation_id', sa.Integer(), sa.ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('variants.id'), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
    )
    op.create_table(
        'order_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=NOW),
    )

def downgrade():
    op.drop_table('order_events')
    op.drop_table('reservation_lines')
    op.drop_table('reservations')
    op.drop_table('order_lines')
    op.drop_index('ix_orders_status_deadline', table_name='orders')
    op.drop_table('orders')
    op.drop_table('variant_stock')
    op.drop_table('variants')
    op.drop_table('products')
