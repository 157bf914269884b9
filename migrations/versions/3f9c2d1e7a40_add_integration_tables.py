"""Add employees, users, API keys and integration sync tables

Revision ID: 3f9c2d1e7a40
Revises:
Create Date: 2026-10-18 09:12:44.512301

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f9c2d1e7a40'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('ix_employees_email', 'employees', ['email'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='EMPLOYEE'),
        sa.Column(
            'employee_id',
            sa.Integer(),
            sa.ForeignKey('employees.id', ondelete='SET NULL'),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'user_id',
            sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('key_hash', sa.String(255), nullable=False, unique=True),
        sa.Column('key_prefix', sa.String(16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])
    op.create_index('ix_api_keys_key_prefix', 'api_keys', ['key_prefix'])

    op.create_table(
        'integration_connections',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('platform', sa.String(32), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('auth_type', sa.String(32), nullable=False, server_default='PAT'),
        sa.Column('access_token_encrypted', sa.LargeBinary(), nullable=False),
        sa.Column('organization_url', sa.String(512), nullable=True),
        sa.Column('organization_name', sa.String(255), nullable=True),
        sa.Column('workspace_id', sa.String(128), nullable=True),
        sa.Column('confluence_space_key', sa.String(128), nullable=True),
        sa.Column('account_email', sa.String(255), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sync_frequency', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_status', sa.String(16), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('sync_in_progress', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sync_started_at', sa.DateTime(), nullable=True),
        sa.Column(
            'created_by_id',
            sa.Integer(),
            sa.ForeignKey('users.id', ondelete='SET NULL'),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index(
        'ix_integration_connections_platform', 'integration_connections', ['platform']
    )

    op.create_table(
        'integration_user_mappings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'connection_id',
            sa.Integer(),
            sa.ForeignKey('integration_connections.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('external_username', sa.String(255), nullable=True),
        sa.Column('external_email', sa.String(255), nullable=False),
        sa.Column(
            'employee_id',
            sa.Integer(),
            sa.ForeignKey('employees.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('employee_email', sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'connection_id', 'external_email', name='uq_integration_mapping_email'
        ),
    )
    op.create_index(
        'ix_integration_user_mappings_connection_id',
        'integration_user_mappings',
        ['connection_id'],
    )

    op.create_table(
        'work_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'connection_id',
            sa.Integer(),
            sa.ForeignKey('integration_connections.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('external_id', sa.String(128), nullable=False),
        sa.Column('external_url', sa.String(1024), nullable=True),
        sa.Column('platform', sa.String(32), nullable=False),
        sa.Column('title', sa.String(1024), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('work_item_type', sa.String(64), nullable=True),
        sa.Column('status', sa.String(128), nullable=True),
        sa.Column('priority', sa.String(64), nullable=True),
        sa.Column(
            'assigned_to_id',
            sa.Integer(),
            sa.ForeignKey('employees.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('assigned_to', sa.String(255), nullable=True),
        sa.Column('assigned_to_name', sa.String(255), nullable=True),
        sa.Column('assigned_to_email', sa.String(255), nullable=True),
        sa.Column('created_date', sa.DateTime(), nullable=True),
        sa.Column('modified_date', sa.DateTime(), nullable=True),
        sa.Column('completed_date', sa.DateTime(), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('project_name', sa.String(255), nullable=True),
        sa.Column('project_external_id', sa.String(128), nullable=True),
        sa.Column('section_id', sa.String(128), nullable=True),
        sa.Column('section_name', sa.String(255), nullable=True),
        sa.Column('area_path', sa.String(512), nullable=True),
        sa.Column('iteration_path', sa.String(512), nullable=True),
        sa.Column('story_points', sa.Float(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('is_stale', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stale_since', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'connection_id', 'external_id', name='uq_work_item_external_id'
        ),
    )
    op.create_index('ix_work_items_connection_id', 'work_items', ['connection_id'])
    op.create_index('ix_work_items_assigned_to_id', 'work_items', ['assigned_to_id'])

    op.create_table(
        'developer_commits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'connection_id',
            sa.Integer(),
            sa.ForeignKey('integration_connections.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column(
            'employee_id',
            sa.Integer(),
            sa.ForeignKey('employees.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('commit_hash', sa.String(64), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('url', sa.String(1024), nullable=True),
        sa.Column('repository_name', sa.String(255), nullable=True),
        sa.Column('files_changed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_added', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lines_deleted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commit_date', sa.DateTime(), nullable=True),
        sa.Column('author_date', sa.DateTime(), nullable=True),
        sa.Column('author_name', sa.String(255), nullable=True),
        sa.Column('author_email', sa.String(255), nullable=True),
        sa.Column('committer_name', sa.String(255), nullable=True),
        sa.Column('committer_email', sa.String(255), nullable=True),
        sa.Column('linked_work_items', sa.JSON(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('connection_id', 'commit_hash', name='uq_commit_hash'),
    )
    op.create_index(
        'ix_developer_commits_connection_id', 'developer_commits', ['connection_id']
    )
    op.create_index(
        'ix_developer_commits_employee_id', 'developer_commits', ['employee_id']
    )

    op.create_table(
        'confluence_pages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'connection_id',
            sa.Integer(),
            sa.ForeignKey('integration_connections.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('external_id', sa.String(128), nullable=False),
        sa.Column('page_type', sa.String(32), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('title', sa.String(1024), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('space_id', sa.String(128), nullable=True),
        sa.Column('space_key', sa.String(128), nullable=True),
        sa.Column('space_name', sa.String(255), nullable=True),
        sa.Column('parent_id', sa.String(128), nullable=True),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.Column('author_id', sa.String(128), nullable=True),
        sa.Column('author_name', sa.String(255), nullable=True),
        sa.Column('owner_id', sa.String(128), nullable=True),
        sa.Column('version', sa.Integer(), nullable=True),
        sa.Column('version_message', sa.Text(), nullable=True),
        sa.Column('created_date', sa.DateTime(), nullable=True),
        sa.Column('updated_date', sa.DateTime(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('is_stale', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stale_since', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'connection_id', 'external_id', name='uq_confluence_page_external_id'
        ),
    )
    op.create_index(
        'ix_confluence_pages_connection_id', 'confluence_pages', ['connection_id']
    )
    op.create_index('ix_confluence_pages_parent_id', 'confluence_pages', ['parent_id'])

    op.create_table(
        'integration_sync_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column(
            'connection_id',
            sa.Integer(),
            sa.ForeignKey('integration_connections.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('work_items_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commits_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pages_synced', sa.Integer(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_integration_sync_history_connection_id',
        'integration_sync_history',
        ['connection_id'],
    )
    op.create_index(
        'ix_integration_sync_history_created_at',
        'integration_sync_history',
        ['created_at'],
    )


def downgrade():
    op.drop_table('integration_sync_history')
    op.drop_table('confluence_pages')
    op.drop_table('developer_commits')
    op.drop_table('work_items')
    op.drop_table('integration_user_mappings')
    op.drop_table('integration_connections')
    op.drop_table('api_keys')
    op.drop_table('users')
    op.drop_table('employees')
