"""Create integrations and sync_events tables

Revision ID: create_integrations_table
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'create_integrations_table'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PROVIDER_TYPES = ('SALESFORCE', 'HUBSPOT', 'PIPEDRIVE', 'ZOHO')
INTEGRATION_STATUSES = ('PENDING', 'ACTIVE', 'ERROR', 'INACTIVE')


def upgrade() -> None:
    """Create integrations and sync_events tables."""
    op.create_table('integrations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('provider_type', sa.Enum(*PROVIDER_TYPES, name='provider_type'), nullable=False),
        sa.Column('status', sa.Enum(*INTEGRATION_STATUSES, name='integration_status'), nullable=False),
        sa.Column('credentials', sa.Text(), nullable=False),
        sa.Column('credentials_updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sync_errors', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_integrations_tenant_id'), 'integrations', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_integrations_status'), 'integrations', ['status'], unique=False)
    op.create_index(op.f('ix_integrations_last_sync_at'), 'integrations', ['last_sync_at'], unique=False)
    # One live integration per tenant and provider
    op.create_index(
        'uq_integrations_tenant_provider_live',
        'integrations',
        ['tenant_id', 'provider_type'],
        unique=True,
        postgresql_where=sa.text('deleted_at IS NULL'),
        sqlite_where=sa.text('deleted_at IS NULL'),
    )

    op.create_table('sync_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('records_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_events_tenant_id'), 'sync_events', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_sync_events_integration_id'), 'sync_events', ['integration_id'], unique=False)


def downgrade() -> None:
    """Drop integrations and sync_events tables."""
    op.drop_index(op.f('ix_sync_events_integration_id'), table_name='sync_events')
    op.drop_index(op.f('ix_sync_events_tenant_id'), table_name='sync_events')
    op.drop_table('sync_events')

    op.drop_index('uq_integrations_tenant_provider_live', table_name='integrations')
    op.drop_index(op.f('ix_integrations_last_sync_at'), table_name='integrations')
    op.drop_index(op.f('ix_integrations_status'), table_name='integrations')
    op.drop_index(op.f('ix_integrations_tenant_id'), table_name='integrations')
    op.drop_table('integrations')
    sa.Enum(name='integration_status').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='provider_type').drop(op.get_bind(), checkfirst=True)
