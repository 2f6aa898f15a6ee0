"""sync entities, conflict backups and audit tables"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20261017_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        sa.Column('deleted_by', sa.String()),
        sa.Column('last_modified_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_modified_by', sa.String(), nullable=False),
        sa.Column('modified_by_device_id', sa.String()),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_by', sa.String()),
    ]


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('actor_id', sa.String(), nullable=False),
        sa.Column('lab_id', sa.UUID(as_uuid=True)),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.UUID(as_uuid=True), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('old_value', sa.Text()),
        sa.Column('new_value', sa.Text()),
        sa.Column('changed_fields', sa.JSON()),
        sa.Column('is_truncated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('overflow_pointer', sa.String()),
        sa.Column('device_id', sa.String()),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ip_address', sa.String(length=45)),
        sa.Column('conflict_backup_id', sa.UUID(as_uuid=True), sa.ForeignKey('conflict_backups.id')),
    ]


def upgrade() -> None:
    op.create_table(
        'labs',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'samples',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('lab_id', sa.UUID(as_uuid=True), sa.ForeignKey('labs.id'), nullable=False),
        sa.Column('sample_type', sa.String(), nullable=False),
        sa.Column('location_latitude', sa.Float(), nullable=False),
        sa.Column('location_longitude', sa.Float(), nullable=False),
        sa.Column('location_description', sa.String()),
        sa.Column('location_hierarchy', sa.String()),
        sa.Column('collection_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('collector_name', sa.String(), nullable=False),
        sa.Column('notes', sa.Text()),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        *_sync_columns(),
    )
    op.create_table(
        'parameters',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('lab_id', sa.UUID(as_uuid=True), sa.ForeignKey('labs.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('unit', sa.String(), nullable=False),
        sa.Column('who_threshold', sa.Float()),
        sa.Column('national_threshold', sa.Float()),
        sa.Column('min_value', sa.Float()),
        sa.Column('max_value', sa.Float()),
        sa.Column('description', sa.String()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_sync_columns(),
    )
    op.create_table(
        'test_results',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('lab_id', sa.UUID(as_uuid=True), sa.ForeignKey('labs.id'), nullable=False),
        sa.Column('sample_id', sa.UUID(as_uuid=True), sa.ForeignKey('samples.id'), nullable=False),
        sa.Column('parameter_id', sa.UUID(as_uuid=True), sa.ForeignKey('parameters.id'), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(), nullable=False),
        sa.Column('test_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('technician_name', sa.String(), nullable=False),
        sa.Column('test_method', sa.String(), nullable=False, server_default='other'),
        sa.Column('compliance_status', sa.String(), nullable=False, server_default='warning'),
        sa.Column('status', sa.String(), nullable=False, server_default='draft'),
        sa.Column('voided_test_result_id', sa.UUID(as_uuid=True), sa.ForeignKey('test_results.id')),
        sa.Column('replaced_by_test_result_id', sa.UUID(as_uuid=True), sa.ForeignKey('test_results.id')),
        sa.Column('void_reason', sa.String()),
        *_sync_columns(),
    )
    for table in ('samples', 'parameters', 'test_results'):
        op.create_index(f'ix_{table}_lab_id', table, ['lab_id'])
        op.create_index(f'ix_{table}_last_synced_at', table, ['last_synced_at'])
    op.create_index('ix_test_results_sample_id', 'test_results', ['sample_id'])

    op.create_table(
        'sync_ledger',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('lab_id', sa.UUID(as_uuid=True), sa.ForeignKey('labs.id')),
        sa.Column('last_watermark', sa.DateTime(timezone=True)),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('records_applied', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_rejected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conflicts_detected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conflicts_resolved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_syncs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_syncs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text()),
        sa.Column('last_sync_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('device_id', 'user_id'),
    )
    op.create_table(
        'conflict_backups',
        sa.Column('id', sa.UUID(as_uuid=True), primary_key=True),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.UUID(as_uuid=True), nullable=False),
        sa.Column('client_version', sa.Text(), nullable=False),
        sa.Column('server_version', sa.Text(), nullable=False),
        sa.Column('client_token', sa.Integer()),
        sa.Column('server_token', sa.Integer(), nullable=False),
        sa.Column('resolution_strategy', sa.String(), nullable=False, server_default='last_write_wins'),
        sa.Column('conflict_detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Column('resolved_by', sa.String()),
        sa.Column('resolution_notes', sa.Text()),
        sa.Column('device_id', sa.String(), nullable=False),
        sa.Column('lab_id', sa.UUID(as_uuid=True), sa.ForeignKey('labs.id'), nullable=False),
        sa.Column('created_by', sa.String(), nullable=False),
    )
    op.create_index('ix_conflict_backups_entity_id', 'conflict_backups', ['entity_id'])
    op.create_index('ix_conflict_backups_lab_id', 'conflict_backups', ['lab_id'])
    op.create_index('ix_conflict_backups_conflict_detected_at', 'conflict_backups', ['conflict_detected_at'])

    op.create_table('audit_entries', *_audit_columns())
    op.create_table(
        'audit_archive_entries',
        *_audit_columns(),
        sa.Column('archived_at', sa.DateTime(timezone=True)),
    )
    for table in ('audit_entries', 'audit_archive_entries'):
        op.create_index(f'ix_{table}_actor_id', table, ['actor_id'])
        op.create_index(f'ix_{table}_entity_id', table, ['entity_id'])
        op.create_index(f'ix_{table}_timestamp', table, ['timestamp'])


def downgrade() -> None:
    op.drop_table('audit_archive_entries')
    op.drop_table('audit_entries')
    op.drop_table('conflict_backups')
    op.drop_table('sync_ledger')
    op.drop_table('test_results')
    op.drop_table('parameters')
    op.drop_table('samples')
    op.drop_table('labs')
