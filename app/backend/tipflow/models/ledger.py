"""
Ledger models - owed rewards and the on-chain batches that settle them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Text, DateTime, Index, UniqueConstraint,
    ForeignKey, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount
from .user_config import EngagementAction


class LedgerStatus(str, Enum):
    """Lifecycle of a ledger entry. SETTLED is terminal."""
    PENDING = "pending"
    SETTLING = "settling"
    SETTLED = "settled"
    FAILED = "failed"


class BatchStatus(str, Enum):
    """Lifecycle of a settlement batch."""
    COLLECTED = "collected"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


class SettlementBatch(BaseModel, TimestampMixin):
    """One batchTip transaction covering many ledger entries of a single token."""

    __tablename__ = "settlement_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    batch_key: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        comment="sha256 of token, per-token batch sequence and member entry ids"
    )

    token_address: Mapped[str] = mapped_column(
        String(42),
        comment="Token settled by this batch, lower-cased"
    )

    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus, name="batchstatus"),
        default=BatchStatus.COLLECTED,
        comment="Batch lifecycle status"
    )

    entry_count: Mapped[int] = mapped_column(Integer, default=0)

    total_amount: Mapped[int] = mapped_column(
        TokenAmount,
        default=0,
        comment="Sum of member amounts in minor units"
    )

    # Signed transaction, persisted before broadcast
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    nonce: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    raw_transaction: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempt: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Broadcast attempts for this signed transaction"
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_batch_token_status", "token_address", "status"),
    )


class LedgerEntry(BaseModel, TimestampMixin):
    """An amount a creator owes an engager, pending on-chain settlement."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    from_address: Mapped[str] = mapped_column(
        String(42),
        comment="Paying creator, lower-cased"
    )

    to_address: Mapped[str] = mapped_column(
        String(42),
        comment="Rewarded engager, lower-cased"
    )

    token_address: Mapped[str] = mapped_column(String(42), comment="Reward token, lower-cased")

    amount: Mapped[int] = mapped_column(TokenAmount, comment="Amount in token minor units")

    action: Mapped[EngagementAction] = mapped_column(
        SQLEnum(EngagementAction, name="engagementaction"),
        comment="Engagement that earned the reward"
    )

    source_event: Mapped[str] = mapped_column(
        String(128),
        comment="Provider event id of the originating webhook"
    )

    interaction_key: Mapped[str] = mapped_column(
        String(128),
        comment="Action plus target; one reward per creator, engager and interaction"
    )

    actor_fid: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    creator_fid: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    status: Mapped[LedgerStatus] = mapped_column(
        SQLEnum(LedgerStatus, name="ledgerstatus"),
        default=LedgerStatus.PENDING,
        comment="Settlement status"
    )

    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Failed settlement attempts"
    )

    batch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("settlement_batches.id"),
        nullable=True,
        comment="Batch currently or last carrying this entry"
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "from_address", "source_event", "to_address",
            name="uq_ledger_source_event"
        ),
        UniqueConstraint(
            "from_address", "to_address", "interaction_key",
            name="uq_ledger_interaction"
        ),
        Index("idx_ledger_token_status", "token_address", "status", "id"),
        Index("idx_ledger_batch", "batch_id"),
    )
