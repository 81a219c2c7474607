"""create calendar sync tables

Revision ID: 4c1f2a9d7e30
Revises:
Create Date: 2026-10-18 09:12:41.508213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4c1f2a9d7e30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""

    # 1. calendar_connections
    op.create_table(
        'calendar_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('calendar_id', sa.String(512), nullable=False),
        sa.Column('calendar_name', sa.String(200), nullable=True),
        sa.Column('account_email', sa.String(320), nullable=True),
        sa.Column('access_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_direction', sa.String(20), server_default='bidirectional'),
        sa.Column('auto_sync', sa.Boolean(), server_default=sa.text('true')),
        sa.Column('sync_status', sa.String(20), server_default='connected'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'))
    )
    op.create_index('ix_calendar_connections_owner_id', 'calendar_connections', ['owner_id'])
    op.create_index('idx_calendar_connections_owner_provider', 'calendar_connections', ['owner_id', 'provider'])

    # 2. appointments (sync columns are the only ones this service writes)
    op.create_table(
        'appointments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=True),
        sa.Column('property_id', sa.String(64), nullable=True),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('location', sa.String(500), nullable=True),
        sa.Column('appointment_type', sa.String(50), server_default='viewing'),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), server_default='scheduled'),
        sa.Column('google_calendar_event_id', sa.String(1024), nullable=True),
        sa.Column('apple_calendar_event_id', sa.String(1024), nullable=True),
        sa.Column('calendar_sync_status', sa.String(20), server_default='pending'),
        sa.Column('calendar_sync_error', sa.Text(), nullable=True),
        sa.Column('last_calendar_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'))
    )
    op.create_index('ix_appointments_owner_id', 'appointments', ['owner_id'])
    op.create_index('ix_appointments_start_time', 'appointments', ['start_time'])

    # 3. calendar_events (local mirror)
    op.create_table(
        'calendar_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_connection_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('calendar_connections.id', ondelete='CASCADE'), nullable=False),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('appointments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_id', sa.String(1024), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('title', sa.String(300), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('location', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), server_default='confirmed', nullable=False),
        sa.Column('sync_status', sa.String(20), server_default='synced'),
        sa.Column('last_modified', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'))
    )
    op.create_index('idx_calendar_events_connection_external', 'calendar_events',
                    ['calendar_connection_id', 'external_id'])
    op.create_index('idx_calendar_events_appointment', 'calendar_events', ['appointment_id'])

    # 4. calendar_sync_logs (append-only audit trail)
    op.create_table(
        'calendar_sync_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_connection_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('calendar_connections.id', ondelete='CASCADE'), nullable=True),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('operation', sa.String(20), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'))
    )
    op.create_index('ix_calendar_sync_logs_calendar_connection_id', 'calendar_sync_logs', ['calendar_connection_id'])
    op.create_index('ix_calendar_sync_logs_created_at', 'calendar_sync_logs', ['created_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_calendar_sync_logs_created_at', table_name='calendar_sync_logs')
    op.drop_index('ix_calendar_sync_logs_calendar_connection_id', table_name='calendar_sync_logs')
    op.drop_table('calendar_sync_logs')

    op.drop_index('idx_calendar_events_appointment', table_name='calendar_events')
    op.drop_index('idx_calendar_events_connection_external', table_name='calendar_events')
    op.drop_table('calendar_events')

    op.drop_index('ix_appointments_start_time', table_name='appointments')
    op.drop_index('ix_appointments_owner_id', table_name='appointments')
    op.drop_table('appointments')

    op.drop_index('idx_calendar_connections_owner_provider', table_name='calendar_connections')
    op.drop_index('ix_calendar_connections_owner_id', table_name='calendar_connections')
    op.drop_table('calendar_connections')
