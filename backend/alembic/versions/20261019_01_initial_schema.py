"""initial knowledge base schema with versioned node tables"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20261019_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BRANCH_TYPES = ('draft', 'suggestion', 'published', 'remix')


def _versioned_columns(table: str) -> list:
    return [
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('static_id', sa.String(), nullable=False),
        sa.Column('branch_id', sa.String(), nullable=True),
        sa.Column(
            'branch_type',
            sa.Enum(*BRANCH_TYPES, name='branch_type_enum', native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column('is_latest', sa.Boolean(), nullable=False),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('major_change_description', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('previous_version_id', sa.Integer(), sa.ForeignKey(f'{table}.id'), nullable=True),
        sa.Column('branched_from_id', sa.Integer(), sa.ForeignKey(f'{table}.id'), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('suggested_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
    ]


def _versioned_indexes(table: str) -> None:
    published = sa.text("is_latest = true AND branch_type = 'published'")
    unpublished = sa.text("is_latest = true AND branch_type <> 'published'")
    op.create_index(
        f'idx_{table}_static_id_is_latest_branch_type', table, ['static_id', 'is_latest', 'branch_type']
    )
    op.create_index(f'idx_{table}_branch_id', table, ['branch_id'])
    op.create_index(
        f'idx_{table}_unique_static_id_published',
        table,
        ['static_id'],
        unique=True,
        sqlite_where=published,
        postgresql_where=published,
    )
    op.create_index(
        f'idx_{table}_unique_branch_id_unpublished',
        table,
        ['branch_id'],
        unique=True,
        sqlite_where=unpublished,
        postgresql_where=unpublished,
    )


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('email', sa.String(), nullable=True, unique=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('is_organization_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('disabled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'user_groups',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'user_group_members',
        sa.Column('user_group_id', sa.Integer(), sa.ForeignKey('user_groups.id'), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), primary_key=True),
        sa.Column('manager', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        'collections',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('default_permissions', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_table(
        'collection_acl',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('user_group_id', sa.Integer(), sa.ForeignKey('user_groups.id'), nullable=True),
        sa.Column('permissions', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            '(user_id IS NULL) <> (user_group_id IS NULL)', name='ck_collection_acl_user_xor_group'
        ),
    )
    op.create_index(
        'idx_collection_acl_collection_user',
        'collection_acl',
        ['collection_id', 'user_id'],
        unique=True,
        sqlite_where=sa.text('user_group_id IS NULL'),
        postgresql_where=sa.text('user_group_id IS NULL'),
    )
    op.create_index(
        'idx_collection_acl_collection_user_group',
        'collection_acl',
        ['collection_id', 'user_group_id'],
        unique=True,
        sqlite_where=sa.text('user_id IS NULL'),
        postgresql_where=sa.text('user_id IS NULL'),
    )

    op.create_table(
        'tools',
        *_versioned_columns('tools'),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('component', sa.String(), nullable=False),
        sa.Column('inputs', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('configuration', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('keywords', sa.JSON(), nullable=False, server_default='[]'),
    )
    _versioned_indexes('tools')

    op.create_table(
        'workflows',
        *_versioned_columns('workflows'),
        sa.Column('collection_id', sa.Integer(), sa.ForeignKey('collections.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('contents', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('keywords', sa.JSON(), nullable=False, server_default='[]'),
    )
    _versioned_indexes('workflows')

    op.create_table(
        'spaces',
        *_versioned_columns('spaces'),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('icon', sa.String(), nullable=True),
        sa.Column('widgets', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('visible_to_org', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    _versioned_indexes('spaces')

    op.create_table(
        'space_acl',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('static_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('user_group_id', sa.Integer(), sa.ForeignKey('user_groups.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_space_acl_static_id', 'space_acl', ['static_id'])

    op.create_table(
        'widgets',
        *_versioned_columns('widgets'),
        sa.Column('organization_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('contents', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('inputs', sa.JSON(), nullable=False, server_default='[]'),
    )
    _versioned_indexes('widgets')

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target_type', sa.String(), nullable=True),
        sa.Column('target_id', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('audit_logs')
    for table in ('widgets', 'space_acl', 'spaces', 'workflows', 'tools'):
        op.drop_table(table)
    op.drop_table('collection_acl')
    op.drop_table('collections')
    op.drop_table('user_group_members')
    op.drop_table('user_groups')
    op.drop_table('users')
    op.drop_table('organizations')
