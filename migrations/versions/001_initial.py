"""Initial migration - create all tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('email_verified', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('subscription_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('notification_settings', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Push subscriptions (one row per browser endpoint)
    op.create_table(
        'push_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('endpoint', sa.Text, nullable=False),
        sa.Column('p256dh', sa.Text, nullable=False),
        sa.Column('auth', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_used', sa.DateTime(timezone=True), nullable=True),
    )

    # Retailers table
    op.create_table(
        'retailers',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(200), nullable=False, unique=True),
        sa.Column('website_url', sa.Text, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('name', sa.Text, nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, index=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('set_name', sa.String(200), nullable=True, index=True),
        sa.Column('series', sa.String(200), nullable=True),
        sa.Column('msrp', sa.Numeric(10, 2), nullable=True),
        sa.Column('image_url', sa.Text, nullable=True),
        sa.Column('popularity_score', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Watches table
    op.create_table(
        'watches',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('retailer_ids', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('max_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('availability_type', sa.String(20), nullable=False, server_default='both'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('alert_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_alerted', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Alerts table
    op.create_table(
        'alerts',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('retailer_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('retailers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(20), nullable=False, index=True),
        sa.Column('priority', sa.String(10), nullable=False, server_default='medium'),
        sa.Column('status', sa.String(10), nullable=False, server_default='pending', index=True),
        sa.Column('data', postgresql.JSONB, nullable=False),
        sa.Column('delivery_channels', postgresql.JSONB, nullable=False, server_default='[]'),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clicked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('retry_count BETWEEN 0 AND 10', name='ck_alerts_retry_count'),
    )

    # Price history table
    op.create_table(
        'price_history',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('retailer_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('retailers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )

    # Purchase transactions (hashed user id only)
    op.create_table(
        'transactions',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=False), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('retailer_slug', sa.String(100), nullable=False),
        sa.Column('user_id_hash', sa.String(128), nullable=False, index=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('price_paid', sa.Numeric(10, 2), nullable=True),
        sa.Column('msrp', sa.Numeric(10, 2), nullable=True),
        sa.Column('qty', sa.Integer, nullable=False, server_default='1'),
        sa.Column('alert_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('purchased_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lead_time_ms', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create unique constraints
    op.create_unique_constraint('uq_push_user_endpoint', 'push_subscriptions', ['user_id', 'endpoint'])

    # Pending-queue and stats lookups
    op.create_index('ix_alerts_status_scheduled_for', 'alerts', ['status', 'scheduled_for'])
    op.create_index('ix_alerts_user_id_created_at', 'alerts', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_alerts_user_id_created_at', table_name='alerts')
    op.drop_index('ix_alerts_status_scheduled_for', table_name='alerts')
    op.drop_table('transactions')
    op.drop_table('price_history')
    op.drop_table('alerts')
    op.drop_table('watches')
    op.drop_table('products')
    op.drop_table('retailers')
    op.drop_table('push_subscriptions')
    op.drop_table('users')
