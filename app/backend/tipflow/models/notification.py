"""
NotificationToken model - Farcaster mini-app push notification credentials.
"""

from datetime import datetime

from sqlalchemy import String, Integer, BigInteger, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class NotificationToken(BaseModel, TimestampMixin):
    """Delivery token a user granted when adding the mini app."""

    __tablename__ = "notification_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        comment="Recipient wallet address, lower-cased"
    )

    fid: Mapped[int] = mapped_column(BigInteger, index=True, comment="Farcaster user id")

    token: Mapped[str] = mapped_column(String(256), comment="Notification token")

    delivery_url: Mapped[str] = mapped_column(
        String(512),
        comment="Client endpoint notifications are posted to"
    )

    added_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        comment="When the token was (re)registered"
    )
