"""Inventory sync schema.

Revision ID: 001_inventory_sync
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates dealer feed configuration, admin users, internal secrets, vehicles
and the sync run audit tables.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_inventory_sync'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    # 1. dealer_api_config - partner feed settings per dealer
    op.create_table(
        'dealer_api_config',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('dealer_id', sa.String(64), nullable=False),
        sa.Column('endpoint_base', sa.String(500), nullable=True),
        sa.Column('api_key_encrypted', sa.Text(), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('sync_interval_minutes', sa.Integer(), server_default='15', nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_dealer_api_config_dealer_id', 'dealer_api_config', ['dealer_id'], unique=True)

    # 2. admin_users - staff allowed to trigger syncs
    op.create_table(
        'admin_users',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False),
        sa.Column('dealer_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_admin_users_dealer_id', 'admin_users', ['dealer_id'])

    # 3. internal_secrets - cron secret and similar
    op.create_table(
        'internal_secrets',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('key', sa.String(100), unique=True, nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
    )

    # 4. vehicles - local listings
    op.create_table(
        'vehicles',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('vin', sa.String(32), nullable=False),
        sa.Column('stock_number', sa.String(100), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('make', sa.String(100), nullable=True),
        sa.Column('model', sa.String(100), nullable=True),
        sa.Column('trim', sa.String(100), nullable=True),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('asking_price', sa.Float(), nullable=True),
        sa.Column('compare_price', sa.Float(), nullable=True),
        sa.Column('mileage', sa.Integer(), nullable=True),
        sa.Column('mpg', postgresql.JSONB(), nullable=True),
        sa.Column('exterior_color', sa.String(100), nullable=True),
        sa.Column('interior_color', sa.String(100), nullable=True),
        sa.Column('transmission', sa.String(100), nullable=True),
        sa.Column('drivetrain', sa.String(100), nullable=True),
        sa.Column('fuel_type', sa.String(50), nullable=True),
        sa.Column('body_style', sa.String(100), nullable=True),
        sa.Column('engine', sa.String(200), nullable=True),
        sa.Column('engine_type', sa.String(100), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('images', postgresql.JSONB(), nullable=True),
        sa.Column('video_urls', postgresql.JSONB(), nullable=True),
        sa.Column('features', postgresql.JSONB(), nullable=True),
        sa.Column('ai_detected_features', postgresql.JSONB(), nullable=True),
        sa.Column('media', postgresql.JSONB(), nullable=True),
        sa.Column('status', sa.String(50), server_default='Available', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('deactivated_by', sa.String(20), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('source', 'vin', name='uq_vehicles_source_vin'),
    )
    op.create_index('ix_vehicles_source', 'vehicles', ['source'])
    op.create_index('ix_vehicles_vin', 'vehicles', ['vin'])
    op.create_index('ix_vehicles_is_active', 'vehicles', ['is_active'])

    # 5. sync_history - one row per run
    op.create_table(
        'sync_history',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column(
            'config_id',
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey('dealer_api_config.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('dealer_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('trigger_source', sa.String(20), server_default='manual', nullable=False),
        sa.Column('invoked_by_user_id', sa.String(64), nullable=True),
        sa.Column('records_created', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_updated', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_unchanged', sa.Integer(), server_default='0', nullable=False),
        sa.Column('records_disabled', sa.Integer(), server_default='0', nullable=False),
        sa.Column('total_records_processed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('error_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('photos_copied', sa.Integer(), server_default='0', nullable=False),
        sa.Column('photos_cleaned_up', sa.Integer(), server_default='0', nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_sync_history_dealer_id', 'sync_history', ['dealer_id'])
    op.create_index('ix_sync_history_status', 'sync_history', ['status'])
    op.create_index('ix_sync_history_started_at', 'sync_history', ['started_at'])

    # 6. sync_errors - capped per-run error log
    op.create_table(
        'sync_errors',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'sync_run_id',
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey('sync_history.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('error_type', sa.String(50), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=False),
        sa.Column('vin', sa.String(32), nullable=True),
        sa.Column('error_details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_sync_errors_sync_run_id', 'sync_errors', ['sync_run_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('sync_errors')
    op.drop_table('sync_history')
    op.drop_table('vehicles')
    op.drop_table('internal_secrets')
    op.drop_table('admin_users')
    op.drop_table('dealer_api_config')
