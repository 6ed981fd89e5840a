"""create match_session and profile tables

Revision ID: 5c2e9a71d0b3
Revises:
Create Date: 2026-10-18 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a71d0b3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    tables = set(insp.get_table_names())
    if 'match_session' not in tables:
        op.create_table(
            'match_session',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('creator', sa.String(length=42), nullable=False),
            sa.Column('opponent', sa.String(length=42), nullable=True),
            sa.Column('wager', sa.String(length=80), nullable=False, server_default='0'),
            sa.Column('settlement_ref', sa.String(length=128), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='waiting'),
            sa.Column('outcome', sa.String(length=8), nullable=True),
            sa.Column('reason', sa.String(length=16), nullable=False, server_default='none'),
            sa.Column('draw_rule', sa.String(length=32), nullable=True),
            sa.Column('start_position', sa.Text(), nullable=False),
            sa.Column('position', sa.Text(), nullable=False),
            sa.Column('moves', sa.Text(), nullable=True),
            sa.Column('last_move', sa.Text(), nullable=True),
            sa.Column('white_ms', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('black_ms', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('draw_offer', sa.String(length=8), nullable=True),
            sa.Column('settlement', sa.String(length=16), nullable=False, server_default='not_required'),
            sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.BigInteger(), nullable=False),
        )
        op.create_index('ix_match_session_creator', 'match_session', ['creator'])
        op.create_index('ix_match_session_opponent', 'match_session', ['opponent'])
        op.create_index('ix_match_session_status', 'match_session', ['status'])
    if 'profile' not in tables:
        op.create_table(
            'profile',
            sa.Column('identity', sa.String(length=42), primary_key=True),
            sa.Column('display_name', sa.String(length=20), nullable=False),
            sa.Column('updated_at', sa.BigInteger(), nullable=True),
        )


def downgrade():
    op.drop_table('profile')
    op.drop_index('ix_match_session_status', table_name='match_session')
    op.drop_index('ix_match_session_opponent', table_name='match_session')
    op.drop_index('ix_match_session_creator', table_name='match_session')
    op.drop_table('match_session')
