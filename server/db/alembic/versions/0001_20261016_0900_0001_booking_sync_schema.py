"""Booking sync schema

Revision ID: 0001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create tour_groups table
    op.create_table('tour_groups',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('group_date', sa.Date(), nullable=False),
        sa.Column('group_time', sa.Time(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('guide_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('max_pax', sa.Integer(), nullable=False),
        sa.Column('total_pax', sa.Integer(), nullable=False),
        sa.Column('is_manual_merge', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('total_pax >= 0', name='ck_tour_group_total_pax_non_negative'),
        sa.CheckConstraint('max_pax > 0', name='ck_tour_group_max_pax_positive'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tour_groups_group_date'), 'tour_groups', ['group_date'], unique=False)

    # Create tours table
    op.create_table('tours',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_booking_id', sa.String(length=64), nullable=True),
        sa.Column('external_confirmation_code', sa.String(length=64), nullable=True),
        sa.Column('external_source', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('time', sa.Time(), nullable=False),
        sa.Column('duration', sa.String(length=50), nullable=True),
        sa.Column('language', sa.String(length=32), nullable=True),
        sa.Column('participants', sa.Integer(), nullable=False),
        sa.Column('participant_names', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=64), nullable=True),
        sa.Column('booking_channel', sa.String(length=100), nullable=True),
        sa.Column('total_amount_minor', sa.Integer(), nullable=False),
        sa.Column('expected_amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('paid', sa.Boolean(), nullable=False),
        sa.Column('cancelled', sa.Boolean(), nullable=False),
        sa.Column('needs_guide_assignment', sa.Boolean(), nullable=False),
        sa.Column('needs_resync', sa.Boolean(), nullable=False),
        sa.Column('guide_id', sa.Integer(), nullable=True),
        sa.Column('rescheduled', sa.Boolean(), nullable=False),
        sa.Column('original_date', sa.Date(), nullable=True),
        sa.Column('original_time', sa.Time(), nullable=True),
        sa.Column('rescheduled_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('group_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('participants >= 1', name='ck_tour_participants_positive'),
        sa.CheckConstraint('total_amount_minor >= 0', name='ck_tour_total_amount_non_negative'),
        sa.CheckConstraint("payment_status IN ('paid', 'partial', 'unpaid')", name='ck_tour_payment_status_valid'),
        sa.ForeignKeyConstraint(['group_id'], ['tour_groups.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_booking_id')
    )
    op.create_index(op.f('ix_tours_external_confirmation_code'), 'tours', ['external_confirmation_code'], unique=False)
    op.create_index(op.f('ix_tours_date'), 'tours', ['date'], unique=False)
    op.create_index(op.f('ix_tours_group_id'), 'tours', ['group_id'], unique=False)

    # Create sync_logs table
    op.create_table('sync_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('sync_type', sa.String(length=20), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('triggered_by', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('bookings_found', sa.Integer(), nullable=False),
        sa.Column('bookings_synced', sa.Integer(), nullable=False),
        sa.Column('bookings_created', sa.Integer(), nullable=False),
        sa.Column('bookings_updated', sa.Integer(), nullable=False),
        sa.Column('bookings_failed', sa.Integer(), nullable=False),
        sa.Column('groups_created', sa.Integer(), nullable=False),
        sa.Column('tours_grouped', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('started', 'completed', 'partial', 'failed')", name='ck_sync_log_status_valid'),
        sa.CheckConstraint("sync_type IN ('manual', 'auto', 'full')", name='ck_sync_log_type_valid'),
        sa.CheckConstraint('end_date >= start_date', name='ck_sync_log_window_ordered'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_logs_status'), 'sync_logs', ['status'], unique=False)
    op.create_index(op.f('ix_sync_logs_created_at'), 'sync_logs', ['created_at'], unique=False)

    # Create rate_limit_counters table
    op.create_table('rate_limit_counters',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('client_id', sa.String(length=100), nullable=False),
        sa.Column('operation', sa.String(length=50), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('request_count >= 0', name='ck_rate_limit_count_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('client_id', 'operation', name='uq_rate_limit_client_operation')
    )
    op.create_index(op.f('ix_rate_limit_counters_window_start'), 'rate_limit_counters', ['window_start'], unique=False)

    # Create webhook_events table
    op.create_table('webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('topic', sa.String(length=100), nullable=False),
        sa.Column('booking_id', sa.String(length=64), nullable=True),
        sa.Column('experience_booking_id', sa.String(length=64), nullable=True),
        sa.Column('payload', sa.JSON(none_as_null=True), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_events_topic'), 'webhook_events', ['topic'], unique=False)
    op.create_index(op.f('ix_webhook_events_booking_id'), 'webhook_events', ['booking_id'], unique=False)

    # Create engine_locks table
    op.create_table('engine_locks',
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('owner', sa.String(length=64), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('engine_locks')
    op.drop_table('webhook_events')
    op.drop_table('rate_limit_counters')
    op.drop_table('sync_logs')
    op.drop_table('tours')
    op.drop_table('tour_groups')
