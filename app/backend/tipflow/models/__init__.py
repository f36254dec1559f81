"""
Database models for the TipFlow backend.

Contains the identity cache, creator reward configuration, the reward
ledger with its settlement batches, notification tokens and the durable
engagement event queue.
"""

from .base import BaseModel, TimestampMixin, TokenAmount
from .user_profile import UserProfile
from .user_config import UserConfig, EngagementAction
from .ledger import LedgerEntry, LedgerStatus, SettlementBatch, BatchStatus
from .notification import NotificationToken
from .pending_event import PendingEvent

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "TokenAmount",
    "UserProfile",
    "UserConfig",
    "EngagementAction",
    "LedgerEntry",
    "LedgerStatus",
    "SettlementBatch",
    "BatchStatus",
    "NotificationToken",
    "PendingEvent",
]
