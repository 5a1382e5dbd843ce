"""initial schema

Revision ID: 3b9d0c41e7a2
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from alembic import op

# revision identifiers, used by Alembic.
revision = '3b9d0c41e7a2'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _base_columns() -> list[sa.Column]:
    """id / uuid / timestamps / soft delete shared by every BaseTableModel table."""
    return [
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    ]


def _uuid_index(table: str) -> None:
    op.create_index(f'ix_{table}_uuid', table, ['uuid'], unique=True)


def upgrade() -> None:
    # Catalogs
    op.create_table('catalogs',
        *_base_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_public', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_catalogs_slug'),
    )
    _uuid_index('catalogs')
    op.create_index('idx_catalogs_slug', 'catalogs', ['slug'], unique=False)

    # Datasets
    op.create_table('datasets',
        *_base_columns(),
        sa.Column('catalog_id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('language', sa.String(length=10), server_default='en', nullable=False),
        sa.Column('event_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('id_strategy', JSON, nullable=False),
        sa.Column('schema_config', JSON, nullable=False),
        sa.Column('geo_field_mapping', JSON, nullable=False),
        sa.Column('field_mapping', JSON, nullable=False),
        sa.Column('transforms', JSON, nullable=False),
        sa.Column('schema_lock_job_id', sa.BigInteger(), nullable=True),
        sa.Column('schema_lock_acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['catalog_id'], ['catalogs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_datasets_slug'),
    )
    _uuid_index('datasets')
    op.create_index('idx_datasets_slug', 'datasets', ['slug'], unique=False)
    op.create_index('idx_datasets_catalog', 'datasets', ['catalog_id'], unique=False)

    # Schema versions (FK to import_jobs added below, the two reference each other)
    op.create_table('schema_versions',
        *_base_columns(),
        sa.Column('dataset_id', sa.BigInteger(), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('schema_definition', JSON, nullable=False),
        sa.Column('field_metadata', JSON, nullable=False),
        sa.Column('changes', JSON, nullable=False),
        sa.Column('field_count_before', sa.Integer(), server_default='0', nullable=False),
        sa.Column('field_count_after', sa.Integer(), server_default='0', nullable=False),
        sa.Column('auto_approved', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('approved_by', sa.String(length=255), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('import_job_id', sa.BigInteger(), nullable=True),
        sa.ForeignKeyConstraint(['dataset_id'], ['datasets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dataset_id', 'version_number', name='uq_schema_versions_dataset_version'),
    )
    _uuid_index('schema_versions')
    op.create_index('idx_schema_versions_dataset', 'schema_versions', ['dataset_id'], unique=False)

    # Scheduled imports
    op.create_table('scheduled_imports',
        *_base_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('source_url', sa.String(length=2048), nullable=False),
        sa.Column('enabled', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('catalog_id', sa.BigInteger(), nullable=False),
        sa.Column('dataset_id', sa.BigInteger(), nullable=True),
        sa.Column('schedule_type', sa.String(length=20), nullable=False),
        sa.Column('frequency', sa.String(length=20), nullable=True),
        sa.Column('cron_expression', sa.String(length=100), nullable=True),
        sa.Column('import_name_template', sa.String(length=255), nullable=False),
        sa.Column('auth_config', JSON, nullable=False),
        sa.Column('retry_config', JSON, nullable=False),
        sa.Column('cache_policy', JSON, nullable=False),
        sa.Column('dataset_mapping', JSON, nullable=False),
        sa.Column('webhook_enabled', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('webhook_token', sa.String(length=64), nullable=True),
        sa.Column('last_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.String(length=20), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('current_retries', sa.Integer(), server_default='0', nullable=False),
        sa.Column('execution_history', JSON, nullable=False),
        sa.Column('statistics', JSON, nullable=False),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('trust_level', sa.Integer(), server_default='2', nullable=False),
        sa.ForeignKeyConstraint(['catalog_id'], ['catalogs.id']),
        sa.ForeignKeyConstraint(['dataset_id'], ['datasets.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('webhook_token', name='uq_scheduled_imports_webhook_token'),
    )
    _uuid_index('scheduled_imports')
    op.create_index('idx_scheduled_imports_due', 'scheduled_imports', ['enabled', 'next_run'], unique=False)
    op.create_index('idx_scheduled_imports_catalog', 'scheduled_imports', ['catalog_id'], unique=False)

    # Import files
    op.create_table('import_files',
        *_base_columns(),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('original_name', sa.String(length=255), nullable=True),
        sa.Column('storage_path', sa.String(length=1024), nullable=False),
        sa.Column('mime_type', sa.String(length=100), nullable=True),
        sa.Column('file_type', sa.String(length=20), nullable=False),
        sa.Column('file_size', sa.Integer(), server_default='0', nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('catalog_id', sa.BigInteger(), nullable=True),
        sa.Column('scheduled_import_id', sa.BigInteger(), nullable=True),
        sa.Column('source_url', sa.String(length=2048), nullable=True),
        sa.Column('sheets', JSON, nullable=False),
        sa.Column('jobs_total', sa.Integer(), server_default='0', nullable=False),
        sa.Column('jobs_completed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('jobs_failed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=255), nullable=True),
        sa.Column('trust_level', sa.Integer(), server_default='2', nullable=False),
        sa.Column('processing_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['catalog_id'], ['catalogs.id']),
        sa.ForeignKeyConstraint(['scheduled_import_id'], ['scheduled_imports.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    _uuid_index('import_files')
    op.create_index('idx_import_files_status', 'import_files', ['status'], unique=False)
    op.create_index('idx_import_files_catalog', 'import_files', ['catalog_id'], unique=False)
    op.create_index('idx_import_files_scheduled', 'import_files', ['scheduled_import_id'], unique=False)

    # Import jobs
    op.create_table('import_jobs',
        *_base_columns(),
        sa.Column('import_file_id', sa.BigInteger(), nullable=False),
        sa.Column('dataset_id', sa.BigInteger(), nullable=False),
        sa.Column('sheet_index', sa.Integer(), server_default='0', nullable=False),
        sa.Column('stage', sa.String(length=50), nullable=False),
        sa.Column('last_successful_stage', sa.String(length=50), nullable=True),
        sa.Column('progress', JSON, nullable=False),
        sa.Column('retry_attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_retry_error', sa.Text(), nullable=True),
        sa.Column('claimed_by', sa.String(length=100), nullable=True),
        sa.Column('claimed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('detected_field_mappings', JSON, nullable=False),
        sa.Column('duplicates', JSON, nullable=False),
        sa.Column('detected_schema', JSON, nullable=False),
        sa.Column('schema_validation', JSON, nullable=False),
        sa.Column('geocoding_results', JSON, nullable=False),
        sa.Column('results', JSON, nullable=False),
        sa.Column('errors', JSON, nullable=False),
        sa.Column('transforms', JSON, nullable=False),
        sa.Column('schema_version_id', sa.BigInteger(), nullable=True),
        sa.Column('approved_by', sa.String(length=255), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', sa.String(length=255), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['import_file_id'], ['import_files.id']),
        sa.ForeignKeyConstraint(['dataset_id'], ['datasets.id']),
        sa.ForeignKeyConstraint(['schema_version_id'], ['schema_versions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    _uuid_index('import_jobs')
    op.create_index('idx_import_jobs_stage', 'import_jobs', ['stage'], unique=False)
    op.create_index('idx_import_jobs_dataset', 'import_jobs', ['dataset_id'], unique=False)
    op.create_index('idx_import_jobs_file', 'import_jobs', ['import_file_id'], unique=False)
    op.create_index('idx_import_jobs_due', 'import_jobs', ['stage', 'next_retry_at'], unique=False)

    with op.batch_alter_table('schema_versions') as batch:
        batch.create_foreign_key('fk_schema_versions_import_job', 'import_jobs', ['import_job_id'], ['id'])

    # Events
    op.create_table('events',
        *_base_columns(),
        sa.Column('dataset_id', sa.BigInteger(), nullable=False),
        sa.Column('import_job_id', sa.BigInteger(), nullable=True),
        sa.Column('data', JSON, nullable=False),
        sa.Column('title', sa.String(length=500), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('event_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('coordinate_source', sa.String(length=20), nullable=False),
        sa.Column('coordinate_confidence', sa.Float(), nullable=True),
        sa.Column('validation_status', sa.String(length=20), nullable=True),
        sa.Column('geocoding_info', JSON, nullable=True),
        sa.Column('unique_id', sa.String(length=512), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=True),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('previous_versions', JSON, nullable=False),
        sa.ForeignKeyConstraint(['dataset_id'], ['datasets.id']),
        sa.ForeignKeyConstraint(['import_job_id'], ['import_jobs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unique_id', name='uq_events_unique_id'),
    )
    _uuid_index('events')
    op.create_index('idx_events_location', 'events', ['longitude', 'latitude'], unique=False)
    op.create_index('idx_events_dataset_hash', 'events', ['dataset_id', 'content_hash'], unique=False)
    op.create_index('idx_events_dataset', 'events', ['dataset_id'], unique=False)
    op.create_index('idx_events_import_job', 'events', ['import_job_id'], unique=False)
    op.create_index('idx_events_timestamp', 'events', ['event_timestamp'], unique=False)
    if op.get_bind().dialect.name == 'postgresql':
        op.create_index('idx_events_data', 'events', ['data'], unique=False, postgresql_using='gin')

    # Location cache
    op.create_table('location_cache',
        *_base_columns(),
        sa.Column('original_address', sa.Text(), nullable=False),
        sa.Column('normalized_address', sa.String(length=1000), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('provider', sa.String(length=100), nullable=True),
        sa.Column('formatted_address', sa.Text(), nullable=True),
        sa.Column('components', JSON, nullable=False),
        sa.Column('hit_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('normalized_address', name='uq_location_cache_normalized'),
    )
    _uuid_index('location_cache')
    op.create_index('idx_location_cache_normalized', 'location_cache', ['normalized_address'], unique=False)

    # Geocoding providers
    op.create_table('geocoding_providers',
        *_base_columns(),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('provider_type', sa.String(length=50), nullable=False),
        sa.Column('enabled', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('priority', sa.Integer(), server_default='10', nullable=False),
        sa.Column('rate_limit_per_second', sa.Float(), nullable=True),
        sa.Column('tags', JSON, nullable=False),
        sa.Column('config', JSON, nullable=False),
        sa.Column('total_requests', sa.Integer(), server_default='0', nullable=False),
        sa.Column('successful_requests', sa.Integer(), server_default='0', nullable=False),
        sa.Column('failed_requests', sa.Integer(), server_default='0', nullable=False),
        sa.Column('average_latency_ms', sa.Float(), server_default='0', nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name', name='uq_geocoding_providers_name'),
    )
    _uuid_index('geocoding_providers')
    op.create_index(
        'idx_geocoding_providers_enabled_priority', 'geocoding_providers', ['enabled', 'priority'], unique=False
    )

    # URL fetch cache
    op.create_table('url_fetch_cache',
        *_base_columns(),
        sa.Column('cache_key', sa.String(length=64), nullable=False),
        sa.Column('url', sa.String(length=2048), nullable=False),
        sa.Column('content', sa.LargeBinary(), nullable=False),
        sa.Column('content_type', sa.String(length=255), nullable=True),
        sa.Column('etag', sa.String(length=255), nullable=True),
        sa.Column('last_modified', sa.String(length=255), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('hit_count', sa.Integer(), server_default='0', nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('cache_key', name='uq_url_fetch_cache_key'),
    )
    _uuid_index('url_fetch_cache')
    op.create_index('idx_url_fetch_cache_key', 'url_fetch_cache', ['cache_key'], unique=False)

    # Quota usage
    op.create_table('quota_usage',
        *_base_columns(),
        sa.Column('actor', sa.String(length=255), nullable=False),
        sa.Column('quota_type', sa.String(length=50), nullable=False),
        sa.Column('window_date', sa.Date(), nullable=False),
        sa.Column('count', sa.Integer(), server_default='0', nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('actor', 'quota_type', 'window_date', name='uq_quota_usage_actor_type_window'),
    )
    _uuid_index('quota_usage')
    op.create_index('idx_quota_usage_actor', 'quota_usage', ['actor'], unique=False)

    # Audit logs (append-only, no soft delete)
    op.create_table('audit_logs',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('actor', sa.String(length=255), nullable=True),
        sa.Column('action', sa.String(length=100), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.BigInteger(), nullable=True),
        sa.Column('entity_uuid', sa.Uuid(), nullable=True),
        sa.Column('old_value', JSON, nullable=True),
        sa.Column('new_value', JSON, nullable=True),
        sa.Column('context', JSON, nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('uuid'),
    )
    op.create_index('idx_audit_actor', 'audit_logs', ['actor'], unique=False)
    op.create_index('idx_audit_action', 'audit_logs', ['action'], unique=False)
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_audit_entity_uuid', 'audit_logs', ['entity_type', 'entity_uuid'], unique=False)
    op.create_index('idx_audit_created', 'audit_logs', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('quota_usage')
    op.drop_table('url_fetch_cache')
    op.drop_table('geocoding_providers')
    op.drop_table('location_cache')
    op.drop_table('events')
    # Drop circular FK first
    with op.batch_alter_table('schema_versions') as batch:
        batch.drop_constraint('fk_schema_versions_import_job', type_='foreignkey')
    op.drop_table('import_jobs')
    op.drop_table('import_files')
    op.drop_table('scheduled_imports')
    op.drop_table('schema_versions')
    op.drop_table('datasets')
    op.drop_table('catalogs')
