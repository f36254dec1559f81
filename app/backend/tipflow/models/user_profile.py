"""
UserProfile model - cached FID to wallet address resolutions.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, BigInteger, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class UserProfile(BaseModel, TimestampMixin):
    """Verified identity of a Farcaster user, written on first resolution."""

    __tablename__ = "user_profiles"

    fid: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Farcaster user id"
    )

    wallet_address: Mapped[str] = mapped_column(
        String(42),
        comment="Verified EVM address, lower-cased"
    )

    username: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Farcaster username"
    )

    display_name: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Display name"
    )

    pfp_url: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
        comment="Profile picture URL"
    )

    resolved_via: Mapped[str] = mapped_column(
        String(32),
        comment="Identity provider that produced this record"
    )

    refreshed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="Last explicit profile refresh"
    )

    __table_args__ = (
        Index("idx_user_profile_wallet", "wallet_address"),
    )
