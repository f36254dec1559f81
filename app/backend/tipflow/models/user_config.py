"""
UserConfig model - per-creator reward configuration.
"""

from enum import Enum

from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, TokenAmount


class EngagementAction(str, Enum):
    """Engagement actions that can earn a reward."""
    LIKE = "like"
    RECAST = "recast"
    REPLY = "reply"
    FOLLOW = "follow"


class UserConfig(BaseModel, TimestampMixin):
    """Reward settings a creator pays out of their own wallet."""

    __tablename__ = "user_configs"

    wallet_address: Mapped[str] = mapped_column(
        String(42),
        primary_key=True,
        comment="Creator wallet address, lower-cased"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        comment="Whether the creator is currently paying rewards"
    )

    token_address: Mapped[str] = mapped_column(
        String(42),
        comment="ERC-20 token rewards are paid in, lower-cased"
    )

    # Amounts in token minor units
    like_amount: Mapped[int] = mapped_column(TokenAmount, default=0, comment="Reward per like")
    recast_amount: Mapped[int] = mapped_column(TokenAmount, default=0, comment="Reward per recast")
    reply_amount: Mapped[int] = mapped_column(TokenAmount, default=0, comment="Reward per reply")
    follow_amount: Mapped[int] = mapped_column(TokenAmount, default=0, comment="Reward per follow")

    like_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    recast_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    reply_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    follow_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    def amount_for(self, action: EngagementAction) -> int:
        return int(getattr(self, f"{EngagementAction(action).value}_amount") or 0)

    def is_enabled(self, action: EngagementAction) -> bool:
        return bool(getattr(self, f"{EngagementAction(action).value}_enabled"))
