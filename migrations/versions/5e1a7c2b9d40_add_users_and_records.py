"""add users and records tables

Revision ID: 5e1a7c2b9d40
Revises:
Create Date: 2026-09-28
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5e1a7c2b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=120), nullable=True),
        sa.Column('case_sensitive', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('remove_accents', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('normalized_tags', sa.JSON(), nullable=False),
        sa.Column('tag_key', sa.String(length=64), nullable=False),
        sa.Column('normalization_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'tag_key', name='ux_records_user_tag_key'),
    )
    op.create_index('ix_records_user_id', 'records', ['user_id'])
    op.create_index('ix_records_user_created', 'records', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_records_user_created', table_name='records')
    op.drop_index('ix_records_user_id', table_name='records')
    op.drop_table('records')
    op.drop_table('users')
