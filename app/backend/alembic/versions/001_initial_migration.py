"""Initial migration - profiles, reward configs, ledger, batches, notification tokens

Revision ID: 001
Revises:
Create Date: 2026-09-28 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


batch_status = postgresql.ENUM('COLLECTED', 'SUBMITTED', 'CONFIRMED', 'REVERTED', name='batchstatus', create_type=False)
ledger_status = postgresql.ENUM('PENDING', 'SETTLING', 'SETTLED', 'FAILED', name='ledgerstatus', create_type=False)
engagement_action = postgresql.ENUM('LIKE', 'RECAST', 'REPLY', 'FOLLOW', name='engagementaction', create_type=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False, comment='Last modification time (UTC)'),
    ]


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE batchstatus AS ENUM ('COLLECTED', 'SUBMITTED', 'CONFIRMED', 'REVERTED')")
    op.execute("CREATE TYPE ledgerstatus AS ENUM ('PENDING', 'SETTLING', 'SETTLED', 'FAILED')")
    op.execute("CREATE TYPE engagementaction AS ENUM ('LIKE', 'RECAST', 'REPLY', 'FOLLOW')")

    # Create user_profiles table
    op.create_table('user_profiles',
        sa.Column('fid', sa.BigInteger(), autoincrement=False, nullable=False, comment='Farcaster user id'),
        sa.Column('wallet_address', sa.String(length=42), nullable=False, comment='Verified EVM address, lower-cased'),
        sa.Column('username', sa.String(length=64), nullable=True, comment='Farcaster username'),
        sa.Column('display_name', sa.String(length=128), nullable=True, comment='Display name'),
        sa.Column('pfp_url', sa.String(length=512), nullable=True, comment='Profile picture URL'),
        sa.Column('resolved_via', sa.String(length=32), nullable=False, comment='Identity provider that produced this record'),
        sa.Column('refreshed_at', sa.DateTime(), nullable=True, comment='Last explicit profile refresh'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('fid')
    )
    op.create_index('idx_user_profile_wallet', 'user_profiles', ['wallet_address'])

    # Create user_configs table
    op.create_table('user_configs',
        sa.Column('wallet_address', sa.String(length=42), nullable=False, comment='Creator wallet address, lower-cased'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Whether the creator is currently paying rewards'),
        sa.Column('token_address', sa.String(length=42), nullable=False, comment='ERC-20 token rewards are paid in, lower-cased'),
        sa.Column('like_amount', sa.String(length=78), nullable=False, comment='Reward per like'),
        sa.Column('recast_amount', sa.String(length=78), nullable=False, comment='Reward per recast'),
        sa.Column('reply_amount', sa.String(length=78), nullable=False, comment='Reward per reply'),
        sa.Column('follow_amount', sa.String(length=78), nullable=False, comment='Reward per follow'),
        sa.Column('like_enabled', sa.Boolean(), nullable=False),
        sa.Column('recast_enabled', sa.Boolean(), nullable=False),
        sa.Column('reply_enabled', sa.Boolean(), nullable=False),
        sa.Column('follow_enabled', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('wallet_address')
    )

    # Create settlement_batches table
    op.create_table('settlement_batches',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('batch_key', sa.String(length=64), nullable=False, comment='sha256 of token, per-token batch sequence and member entry ids'),
        sa.Column('token_address', sa.String(length=42), nullable=False, comment='Token settled by this batch, lower-cased'),
        sa.Column('status', batch_status, nullable=False, comment='Batch lifecycle status'),
        sa.Column('entry_count', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.String(length=78), nullable=False, comment='Sum of member amounts in minor units'),
        sa.Column('tx_hash', sa.String(length=66), nullable=True),
        sa.Column('nonce', sa.BigInteger(), nullable=True),
        sa.Column('raw_transaction', sa.Text(), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, comment='Broadcast attempts for this signed transaction'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('batch_key')
    )
    op.create_index('idx_batch_token_status', 'settlement_batches', ['token_address', 'status'])
    op.create_index('ix_settlement_batches_tx_hash', 'settlement_batches', ['tx_hash'])

    # Create ledger_entries table
    op.create_table('ledger_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('from_address', sa.String(length=42), nullable=False, comment='Paying creator, lower-cased'),
        sa.Column('to_address', sa.String(length=42), nullable=False, comment='Rewarded engager, lower-cased'),
        sa.Column('token_address', sa.String(length=42), nullable=False, comment='Reward token, lower-cased'),
        sa.Column('amount', sa.String(length=78), nullable=False, comment='Amount in token minor units'),
        sa.Column('action', engagement_action, nullable=False, comment='Engagement that earned the reward'),
        sa.Column('source_event', sa.String(length=128), nullable=False, comment='Provider event id of the originating webhook'),
        sa.Column('interaction_key', sa.String(length=128), nullable=False, comment='Action plus target; one reward per creator, engager and interaction'),
        sa.Column('actor_fid', sa.BigInteger(), nullable=True),
        sa.Column('creator_fid', sa.BigInteger(), nullable=True),
        sa.Column('status', ledger_status, nullable=False, comment='Settlement status'),
        sa.Column('retry_count', sa.Integer(), nullable=False, comment='Failed settlement attempts'),
        sa.Column('batch_id', sa.Integer(), nullable=True, comment='Batch currently or last carrying this entry'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('tx_hash', sa.String(length=66), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['batch_id'], ['settlement_batches.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('from_address', 'source_event', 'to_address', name='uq_ledger_source_event'),
        sa.UniqueConstraint('from_address', 'to_address', 'interaction_key', name='uq_ledger_interaction')
    )
    op.create_index('idx_ledger_token_status', 'ledger_entries', ['token_address', 'status', 'id'])
    op.create_index('idx_ledger_batch', 'ledger_entries', ['batch_id'])

    # Create notification_tokens table
    op.create_table('notification_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_address', sa.String(length=42), nullable=False, comment='Recipient wallet address, lower-cased'),
        sa.Column('fid', sa.BigInteger(), nullable=False, comment='Farcaster user id'),
        sa.Column('token', sa.String(length=256), nullable=False, comment='Notification token'),
        sa.Column('delivery_url', sa.String(length=512), nullable=False, comment='Client endpoint notifications are posted to'),
        sa.Column('added_at', sa.DateTime(), nullable=False, comment='When the token was (re)registered'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('wallet_address')
    )
    op.create_index('ix_notification_tokens_fid', 'notification_tokens', ['fid'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_notification_tokens_fid', table_name='notification_tokens')
    op.drop_index('idx_ledger_batch', table_name='ledger_entries')
    op.drop_index('idx_ledger_token_status', table_name='ledger_entries')
    op.drop_index('ix_settlement_batches_tx_hash', table_name='settlement_batches')
    op.drop_index('idx_batch_token_status', table_name='settlement_batches')
    op.drop_index('idx_user_profile_wallet', table_name='user_profiles')

    # Drop tables
    op.drop_table('notification_tokens')
    op.drop_table('ledger_entries')
    op.drop_table('settlement_batches')
    op.drop_table('user_configs')
    op.drop_table('user_profiles')

    # Drop enum types
    op.execute("DROP TYPE engagementaction")
    op.execute("DROP TYPE ledgerstatus")
    op.execute("DROP TYPE batchstatus")
