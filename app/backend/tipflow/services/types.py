"""
Shared data types for the reward pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from tipflow.models.user_config import EngagementAction


class EngagementEventType(str, Enum):
    """Webhook event types that carry engagement."""
    CAST_CREATED = "cast.created"
    REACTION_CREATED = "reaction.created"
    FOLLOW_CREATED = "follow.created"


@dataclass(frozen=True)
class EngagementEvent:
    """A normalized like, recast, reply or follow."""
    event_type: EngagementEventType
    action: EngagementAction
    actor_fid: int
    provider_event_id: str
    creator_fid: Optional[int] = None
    target_cast_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def interaction_key(self) -> str:
        """One reward per engager, creator and interaction target."""
        if self.action == EngagementAction.FOLLOW:
            return f"follow:{self.creator_fid}"
        return f"{self.action.value}:{self.target_cast_hash}"

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe form for the durable event queue."""
        return {
            "event_type": self.event_type.value,
            "action": self.action.value,
            "actor_fid": self.actor_fid,
            "provider_event_id": self.provider_event_id,
            "creator_fid": self.creator_fid,
            "target_cast_hash": self.target_cast_hash,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "EngagementEvent":
        return cls(
            event_type=EngagementEventType(data["event_type"]),
            action=EngagementAction(data["action"]),
            actor_fid=int(data["actor_fid"]),
            provider_event_id=data["provider_event_id"],
            creator_fid=data.get("creator_fid"),
            target_cast_hash=data.get("target_cast_hash"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass(frozen=True)
class ResolvedIdentity:
    """Result of a successful identity provider lookup."""
    fid: int
    address: str
    provider: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    pfp_url: Optional[str] = None


@dataclass
class IngestResult:
    """Outcome of processing one engagement event."""
    processed: bool
    reason: str
    entry_id: Optional[int] = None
    created: bool = False
