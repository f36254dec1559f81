"""Durable engagement event queue

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('pending_events',
        sa.Column('provider_event_id', sa.String(length=256), nullable=False, comment='Provider event id of the engagement'),
        sa.Column('payload', sa.JSON(), nullable=False, comment='Normalized engagement event'),
        sa.Column('attempts', sa.Integer(), nullable=False, comment='Processing attempts so far'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False, comment='Last modification time (UTC)'),
        sa.PrimaryKeyConstraint('provider_event_id')
    )


def downgrade() -> None:
    op.drop_table('pending_events')
