"""Create visitor_records table

Revision ID: a3f9c1d2e4b5
Revises:
Create Date: 2026-10-19 10:12:41.208135

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


def table_exists(table_name: str) -> bool:
    """检查表是否已存在"""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    return table_name in inspector.get_table_names()


def index_exists(table_name: str, index_name: str) -> bool:
    """检查索引是否已存在"""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if table_name not in inspector.get_table_names():
        return False
    return any(index["name"] == index_name for index in inspector.get_indexes(table_name))


# revision identifiers, used by Alembic.
revision: str = 'a3f9c1d2e4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 启动时 create_all 可能已建表，这里保持幂等
    if not table_exists('visitor_records'):
        op.create_table(
            'visitor_records',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('ip', sa.String(length=64), nullable=False),
            sa.Column('fingerprint', sa.String(length=128), nullable=False),
            sa.Column('user_agent', sa.String(length=1024), nullable=False),
            sa.Column('visit_count', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('source', sa.String(length=16), nullable=False, server_default='visitor'),
            sa.Column('first_visit', sa.DateTime(), nullable=False),
            sa.Column('last_visit', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
    if not index_exists('visitor_records', 'ix_visitor_records_fingerprint'):
        op.create_index('ix_visitor_records_fingerprint', 'visitor_records', ['fingerprint'], unique=True)
    if not index_exists('visitor_records', 'ix_visitor_records_source'):
        op.create_index('ix_visitor_records_source', 'visitor_records', ['source'])


def downgrade() -> None:
    if table_exists('visitor_records'):
        if index_exists('visitor_records', 'ix_visitor_records_source'):
            op.drop_index('ix_visitor_records_source', table_name='visitor_records')
        if index_exists('visitor_records', 'ix_visitor_records_fingerprint'):
            op.drop_index('ix_visitor_records_fingerprint', table_name='visitor_records')
        op.drop_table('visitor_records')
