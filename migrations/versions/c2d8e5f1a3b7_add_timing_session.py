"""add server-side timing_session table

Revision ID: c2d8e5f1a3b7
Revises: b7c41e2a9f10
Create Date: 2026-10-17 14:10:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c2d8e5f1a3b7'
down_revision = 'b7c41e2a9f10'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'timing_session',
        sa.Column('key', sa.String(length=64), primary_key=True),
        sa.Column('data_json', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table('timing_session')
