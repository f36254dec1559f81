"""
PendingEvent model - accepted engagement webhooks not yet ingested.
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PendingEvent(BaseModel, TimestampMixin):
    """
    Durable copy of a queued engagement event.

    Written before the webhook is acknowledged and deleted once the event
    has been ingested, so events survive restarts and long outages.
    """

    __tablename__ = "pending_events"

    provider_event_id: Mapped[str] = mapped_column(
        String(256),
        primary_key=True,
        comment="Provider event id of the engagement"
    )

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, comment="Normalized engagement event")

    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Processing attempts so far"
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
