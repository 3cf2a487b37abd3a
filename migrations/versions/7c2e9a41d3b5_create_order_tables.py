"""Create orders, stock_records, stripe_events and audit_events

Revision ID: 7c2e9a41d3b5
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e9a41d3b5'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('folder', sa.String(length=20), nullable=False, server_default='orders'),
        sa.Column('payment_id', sa.String(length=255), nullable=False),
        sa.Column('payment_intent', sa.String(length=255), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('client_reference_id', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=64), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('amount_total', sa.Integer(), nullable=False),
        sa.Column('shipping_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('status', sa.JSON(), nullable=True),
        sa.Column('payment_status', sa.JSON(), nullable=True),
        sa.Column('payment_type', sa.String(length=20), nullable=False, server_default='stripe'),
        sa.Column('email_sent', sa.Boolean(), nullable=True),
        sa.Column('stock_adjusted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('moved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('moved_from', sa.String(length=20), nullable=True),
        sa.Column('written_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id'),
        sa.UniqueConstraint('session_id')
    )
    op.create_index('ix_orders_folder', 'orders', ['folder'])
    op.create_index('ix_orders_payment_intent', 'orders', ['payment_intent'])
    op.create_index('ix_orders_email', 'orders', ['email'])

    op.create_table('stock_records',
        sa.Column('id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('stock_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('is_sample', sa.Boolean(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint('stock_value >= 0', name='ck_stock_records_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('stripe_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('outcome', sa.String(length=50), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_event_id')
    )

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=True),
        sa.Column('actor', sa.String(length=50), nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_order_id', 'audit_events', ['order_id'])


def downgrade():
    op.drop_index('ix_audit_events_order_id', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_table('stripe_events')
    op.drop_table('stock_records')
    op.drop_index('ix_orders_email', table_name='orders')
    op.drop_index('ix_orders_payment_intent', table_name='orders')
    op.drop_index('ix_orders_folder', table_name='orders')
    op.drop_table('orders')
