"""Initial schema: channels, stock requests, channel stock ledger, sales, returns

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. Catalog and staff reference tables (products, staff)
2. Channels with goods and payment status tracks, staff assignments, expenses
3. Stock requests with per-barcode lines, shipments
4. Channel stock buckets (conservation-checked), warehouse pool, stock movements
5. Sales, sale items, sale adjustments
6. Return summaries and items, event log, document sequences
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. REFERENCE TABLES
    # ==========================================================================
    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('size', sa.String(length=16), nullable=True),
        sa.Column('color', sa.String(length=64), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_products')),
        sa.UniqueConstraint('barcode', name=op.f('uq_products_barcode')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_code', ['code'], unique=False)
        batch_op.create_index('ix_products_code_color_size', ['code', 'color', 'size'], unique=False)

    op.create_table('staff',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=16), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_staff')),
        sa.UniqueConstraint('code', name=op.f('uq_staff_code')),
        sqlite_autoincrement=True,
    )

    # ==========================================================================
    # 2. CHANNELS
    # ==========================================================================
    op.create_table('channels',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('location', sa.String(length=255), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False),
        sa.Column('sales_target_cents', sa.Integer(), nullable=True),
        sa.Column('responsible_person_name', sa.String(length=200), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_channels')),
        sa.UniqueConstraint('code', name='uq_channels_code'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('channels', schema=None) as batch_op:
        batch_op.create_index('ix_channels_status', ['status'], unique=False)
        batch_op.create_index('ix_channels_payment_status', ['payment_status'], unique=False)
        batch_op.create_index('ix_channels_status_created', ['status', 'created_at'], unique=False)

    op.create_table('staff_assignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('staff_id', sa.Integer(), nullable=False),
        sa.Column('is_main', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_staff_assignments_channel_id_channels')),
        sa.ForeignKeyConstraint(['staff_id'], ['staff.id'], name=op.f('fk_staff_assignments_staff_id_staff')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_staff_assignments')),
        sa.UniqueConstraint('channel_id', 'staff_id', name='uq_staff_assignments_channel_staff'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('staff_assignments', schema=None) as batch_op:
        batch_op.create_index('ix_staff_assignments_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_staff_assignments_staff_id', ['staff_id'], unique=False)

    op.create_table('channel_expenses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_channel_expenses_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_channel_expenses')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('channel_expenses', schema=None) as batch_op:
        batch_op.create_index('ix_channel_expenses_channel_id', ['channel_id'], unique=False)

    # ==========================================================================
    # 3. STOCK REQUESTS
    # ==========================================================================
    op.create_table('stock_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('request_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('requested_total_quantity', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.String(length=64), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_stock_requests_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_stock_requests')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('stock_requests', schema=None) as batch_op:
        batch_op.create_index('ix_stock_requests_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_stock_requests_status', ['status'], unique=False)
        batch_op.create_index('ix_stock_requests_channel_status', ['channel_id', 'status'], unique=False)

    op.create_table('stock_request_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('request_id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('size', sa.String(length=16), nullable=True),
        sa.Column('requested_quantity', sa.Integer(), nullable=False),
        sa.Column('packed_quantity', sa.Integer(), nullable=True),
        sa.Column('received_quantity', sa.Integer(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('remarks', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['request_id'], ['stock_requests.id'], name=op.f('fk_stock_request_items_request_id_stock_requests')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_stock_request_items')),
        sa.UniqueConstraint('request_id', 'barcode', name='uq_stock_request_items_request_barcode'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('stock_request_items', schema=None) as batch_op:
        batch_op.create_index('ix_stock_request_items_request_id', ['request_id'], unique=False)
        batch_op.create_index('ix_stock_request_items_barcode', ['barcode'], unique=False)

    # ==========================================================================
    # 4. RETURNS (before shipments, which reference them)
    # ==========================================================================
    op.create_table('return_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('confirmed_by', sa.String(length=64), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_return_summaries_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_return_summaries')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('return_summaries', schema=None) as batch_op:
        batch_op.create_index('ix_return_summaries_channel_id', ['channel_id'], unique=False)

    op.create_table('return_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('summary_id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('sold_quantity', sa.Integer(), nullable=False),
        sa.Column('damaged_quantity', sa.Integer(), nullable=False),
        sa.Column('missing_quantity', sa.Integer(), nullable=False),
        sa.Column('remaining_quantity', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['summary_id'], ['return_summaries.id'], name=op.f('fk_return_items_summary_id_return_summaries')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_return_items')),
        sa.UniqueConstraint('summary_id', 'barcode', name='uq_return_items_summary_barcode'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('return_items', schema=None) as batch_op:
        batch_op.create_index('ix_return_items_summary_id', ['summary_id'], unique=False)

    op.create_table('shipments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('stock_request_id', sa.Integer(), nullable=True),
        sa.Column('return_summary_id', sa.Integer(), nullable=True),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('tracking_number', sa.String(length=128), nullable=True),
        sa.Column('total_quantity', sa.Integer(), nullable=False),
        sa.Column('shipped_by', sa.String(length=64), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint(
            '(stock_request_id IS NOT NULL) OR (return_summary_id IS NOT NULL)',
            name='ck_shipments_has_parent',
        ),
        sa.ForeignKeyConstraint(['stock_request_id'], ['stock_requests.id'], name=op.f('fk_shipments_stock_request_id_stock_requests')),
        sa.ForeignKeyConstraint(['return_summary_id'], ['return_summaries.id'], name=op.f('fk_shipments_return_summary_id_return_summaries')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_shipments')),
        sa.UniqueConstraint('stock_request_id', name=op.f('uq_shipments_stock_request_id')),
        sa.UniqueConstraint('return_summary_id', name=op.f('uq_shipments_return_summary_id')),
        sqlite_autoincrement=True,
    )

    # ==========================================================================
    # 5. STOCK LEDGER
    # ==========================================================================
    op.create_table('channel_stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('received_quantity', sa.Integer(), nullable=False),
        sa.Column('available_quantity', sa.Integer(), nullable=False),
        sa.Column('sold_quantity', sa.Integer(), nullable=False),
        sa.Column('damaged_quantity', sa.Integer(), nullable=False),
        sa.Column('missing_quantity', sa.Integer(), nullable=False),
        sa.Column('returned_quantity', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('received_quantity >= 0', name='ck_channel_stocks_received_nonneg'),
        sa.CheckConstraint('available_quantity >= 0', name='ck_channel_stocks_available_nonneg'),
        sa.CheckConstraint('sold_quantity >= 0', name='ck_channel_stocks_sold_nonneg'),
        sa.CheckConstraint('damaged_quantity >= 0', name='ck_channel_stocks_damaged_nonneg'),
        sa.CheckConstraint('missing_quantity >= 0', name='ck_channel_stocks_missing_nonneg'),
        sa.CheckConstraint('returned_quantity >= 0', name='ck_channel_stocks_returned_nonneg'),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_channel_stocks_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_channel_stocks')),
        sa.UniqueConstraint('channel_id', 'barcode', name='uq_channel_stocks_channel_barcode'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('channel_stocks', schema=None) as batch_op:
        batch_op.create_index('ix_channel_stocks_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_channel_stocks_barcode', ['barcode'], unique=False)

    op.create_table('warehouse_stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_warehouse_stocks')),
        sa.UniqueConstraint('barcode', name=op.f('uq_warehouse_stocks_barcode')),
        sqlite_autoincrement=True,
    )

    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('from_location', sa.String(length=200), nullable=True),
        sa.Column('to_location', sa.String(length=200), nullable=True),
        sa.Column('channel_id', sa.Integer(), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_stock_movements_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_stock_movements')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.create_index('ix_stock_movements_movement_type', ['movement_type'], unique=False)
        batch_op.create_index('ix_stock_movements_barcode', ['barcode'], unique=False)
        batch_op.create_index('ix_stock_movements_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_stock_movements_channel_created', ['channel_id', 'created_at'], unique=False)

    # ==========================================================================
    # 6. SALES
    # ==========================================================================
    op.create_table('sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=True),
        sa.Column('bill_code', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('adjustment_total_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False),
        sa.Column('sold_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.String(length=64), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_sales_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sales')),
        sa.UniqueConstraint('channel_id', 'bill_code', name='uq_sales_channel_bill_code'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('sales', schema=None) as batch_op:
        batch_op.create_index('ix_sales_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_sales_status', ['status'], unique=False)
        batch_op.create_index('ix_sales_channel_status_sold', ['channel_id', 'status', 'sold_at'], unique=False)

    op.create_table('sale_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('list_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('is_freebie', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], name=op.f('fk_sale_items_sale_id_sales')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sale_items')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('sale_items', schema=None) as batch_op:
        batch_op.create_index('ix_sale_items_sale_id', ['sale_id'], unique=False)
        batch_op.create_index('ix_sale_items_barcode', ['barcode'], unique=False)

    op.create_table('sale_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], name=op.f('fk_sale_adjustments_sale_id_sales')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sale_adjustments')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('sale_adjustments', schema=None) as batch_op:
        batch_op.create_index('ix_sale_adjustments_sale_id', ['sale_id'], unique=False)

    # ==========================================================================
    # 7. AUDIT TRAIL AND SEQUENCES
    # ==========================================================================
    op.create_table('event_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('channel_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('changed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['channel_id'], ['channels.id'], name=op.f('fk_event_logs_channel_id_channels')),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_event_logs')),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('event_logs', schema=None) as batch_op:
        batch_op.create_index('ix_event_logs_channel_id', ['channel_id'], unique=False)
        batch_op.create_index('ix_event_logs_action', ['action'], unique=False)
        batch_op.create_index('ix_event_logs_channel_created', ['channel_id', 'created_at'], unique=False)

    op.create_table('document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scope_key', sa.String(length=64), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_document_sequences')),
        sa.UniqueConstraint('scope_key', 'document_type', name='uq_doc_sequences_scope_type'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('document_sequences', schema=None) as batch_op:
        batch_op.create_index('ix_document_sequences_scope_key', ['scope_key'], unique=False)
        batch_op.create_index('ix_document_sequences_document_type', ['document_type'], unique=False)


def downgrade():
    op.drop_table('document_sequences')
    op.drop_table('event_logs')
    op.drop_table('sale_adjustments')
    op.drop_table('sale_items')
    op.drop_table('sales')
    op.drop_table('stock_movements')
    op.drop_table('warehouse_stocks')
    op.drop_table('channel_stocks')
    op.drop_table('shipments')
    op.drop_table('return_items')
    op.drop_table('return_summaries')
    op.drop_table('stock_request_items')
    op.drop_table('stock_requests')
    op.drop_table('channel_expenses')
    op.drop_table('staff_assignments')
    op.drop_table('channels')
    op.drop_table('staff')
    op.drop_table('products')
