"""
Webhook ingestion: normalize engagement webhooks and drive the reward pipeline.

Supported engagement payloads (Neynar webhook shapes, ``type`` or ``event``):

- ``reaction.created``: like (reaction_type 1) or recast (2) on an original cast
- ``cast.created``: only replies count; the parent cast's author is paid from
- ``follow.created``: ``user`` follows ``target_user``

Mini-app lifecycle events (``miniapp_added``, ``miniapp_removed``,
``notifications_enabled``, ``notifications_disabled``) manage notification
tokens instead of producing rewards.

Redelivered webhooks map to the same provider event id, so the ledger's
unique constraints absorb them.
"""

import base64
import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from tipflow.core.database import get_async_session
from tipflow.core.exceptions import (
    ExternalServiceError, TransientExternalError, UnsupportedEventError, ValidationError
)
from tipflow.models.user_config import EngagementAction
from tipflow.services.config_store import ConfigStore
from tipflow.services.identity_providers import NeynarClient
from tipflow.services.identity_resolver import IdentityResolver, get_identity_resolver
from tipflow.services.ledger import LedgerService, PendingReward
from tipflow.services.notification_dispatcher import (
    NotificationDispatcher, get_notification_dispatcher
)
from tipflow.services.reward_engine import RewardPolicy, evaluate
from tipflow.services.types import EngagementEvent, EngagementEventType, IngestResult
from tipflow.utils.validation import parse_fid


logger = structlog.get_logger(__name__)

TOKEN_ADDED_EVENTS = {"miniapp_added", "frame_added", "notifications_enabled"}
TOKEN_REMOVED_EVENTS = {"miniapp_removed", "frame_removed", "notifications_disabled"}
LIFECYCLE_EVENTS = TOKEN_ADDED_EVENTS | TOKEN_REMOVED_EVENTS

REACTION_ACTIONS = {
    1: EngagementAction.LIKE,
    2: EngagementAction.RECAST,
    "like": EngagementAction.LIKE,
    "recast": EngagementAction.RECAST,
}


def event_name(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("type") or payload.get("event")


def _b64url_json(value: str) -> Dict[str, Any]:
    padded = value + "=" * (-len(value) % 4)
    return json.loads(base64.urlsafe_b64decode(padded.encode()).decode())


def decode_signed_message(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Unwrap a JSON Farcaster Signature envelope ({header, payload, signature}).

    The fid from the header is merged into the decoded payload. Plain JSON
    bodies are returned as-is.
    """
    if not {"header", "payload", "signature"} <= set(payload):
        return payload
    try:
        header = _b64url_json(payload["header"])
        body = _b64url_json(payload["payload"])
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Malformed signed webhook envelope: {e}")
    body.setdefault("fid", header.get("fid"))
    return body


def _timestamp(payload: Dict[str, Any], data: Dict[str, Any]) -> datetime:
    raw = data.get("timestamp") or payload.get("created_at")
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return datetime.utcnow()
        if parsed.tzinfo:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return datetime.utcnow()


def _require_fid(value: Any, field_name: str, name: str) -> int:
    fid = parse_fid(value)
    if fid is None:
        raise ValidationError(f"{name} payload is missing {field_name}", {"event_type": name})
    return fid


def normalize_engagement(payload: Dict[str, Any]) -> EngagementEvent:
    """
    Build an EngagementEvent from a webhook body.

    Raises:
        UnsupportedEventError: well-formed events that never earn a reward
        ValidationError: malformed payloads
    """
    name = event_name(payload)
    data = payload.get("data")
    if not isinstance(data, dict):
        data = payload
    explicit_id = payload.get("id") or payload.get("event_id")
    timestamp = _timestamp(payload, data)

    if name == EngagementEventType.REACTION_CREATED.value:
        action = REACTION_ACTIONS.get(data.get("reaction_type"))
        if action is None:
            raise UnsupportedEventError(f"unsupported reaction type {data.get('reaction_type')!r}", name)
        cast = data.get("cast") or {}
        if cast.get("parent_hash"):
            raise UnsupportedEventError("reactions to replies are not rewarded", name)
        cast_hash = cast.get("hash")
        if not cast_hash:
            raise ValidationError("reaction payload is missing cast.hash", {"event_type": name})
        actor = _require_fid((data.get("user") or {}).get("fid"), "user.fid", name)
        creator = _require_fid((cast.get("author") or {}).get("fid"), "cast.author.fid", name)
        return EngagementEvent(
            event_type=EngagementEventType.REACTION_CREATED,
            action=action,
            actor_fid=actor,
            creator_fid=creator,
            target_cast_hash=cast_hash,
            provider_event_id=explicit_id or f"reaction:{action.value}:{actor}:{cast_hash}",
            timestamp=timestamp,
        )

    if name == EngagementEventType.CAST_CREATED.value:
        parent_hash = data.get("parent_hash")
        if not parent_hash:
            raise UnsupportedEventError("cast is not a reply", name)
        reply_hash = data.get("hash")
        if not reply_hash:
            raise ValidationError("cast payload is missing hash", {"event_type": name})
        actor = _require_fid((data.get("author") or {}).get("fid"), "author.fid", name)
        return EngagementEvent(
            event_type=EngagementEventType.CAST_CREATED,
            action=EngagementAction.REPLY,
            actor_fid=actor,
            creator_fid=parse_fid((data.get("parent_author") or {}).get("fid")),
            target_cast_hash=parent_hash,
            provider_event_id=explicit_id or f"reply:{reply_hash}",
            timestamp=timestamp,
        )

    if name == EngagementEventType.FOLLOW_CREATED.value:
        actor = _require_fid((data.get("user") or {}).get("fid"), "user.fid", name)
        creator = _require_fid((data.get("target_user") or {}).get("fid"), "target_user.fid", name)
        return EngagementEvent(
            event_type=EngagementEventType.FOLLOW_CREATED,
            action=EngagementAction.FOLLOW,
            actor_fid=actor,
            creator_fid=creator,
            provider_event_id=explicit_id or f"follow:{actor}:{creator}",
            timestamp=timestamp,
        )

    raise UnsupportedEventError(f"unsupported event type: {name}", name)


class WebhookIngestor:
    """Runs one engagement event through resolution, evaluation and the ledger."""

    def __init__(
        self,
        resolver: Optional[IdentityResolver] = None,
        neynar: Optional[NeynarClient] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        policy: Optional[RewardPolicy] = None
    ):
        self.logger = logger.bind(service="webhook_ingestor")
        self.resolver = resolver or get_identity_resolver()
        self.neynar = neynar or NeynarClient()
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self.policy = policy or RewardPolicy.from_settings()

    def _skip(self, event: EngagementEvent, reason: str) -> IngestResult:
        self.logger.info(
            "Engagement skipped",
            event_id=event.provider_event_id,
            action=event.action.value,
            actor_fid=event.actor_fid,
            creator_fid=event.creator_fid,
            reason=reason,
        )
        return IngestResult(processed=False, reason=reason)

    async def process(self, event: EngagementEvent) -> IngestResult:
        if event.creator_fid is None and event.action == EngagementAction.REPLY:
            try:
                creator_fid = await self.neynar.get_cast_author_fid(event.target_cast_hash)
            except TransientExternalError:
                raise
            except ExternalServiceError as e:
                return self._skip(event, f"parent cast lookup failed: {e.message}")
            event = replace(event, creator_fid=parse_fid(creator_fid))
        if event.creator_fid is None:
            return self._skip(event, "creator unknown")

        creator_address = await self.resolver.resolve(event.creator_fid)
        if not creator_address:
            return self._skip(event, "creator has no verified address")

        async with get_async_session() as db:
            config = await ConfigStore(db).get_config(creator_address)
        if config is None:
            return self._skip(event, "creator has no active reward config")

        actor_address = await self.resolver.resolve(event.actor_fid)

        decision = evaluate(event, config, actor_address, creator_address, self.policy)
        if not decision.eligible:
            return self._skip(event, decision.reason)

        async with get_async_session() as db:
            record = await LedgerService(db).record_pending(PendingReward(
                from_address=creator_address,
                to_address=actor_address,
                token_address=decision.token_address,
                amount=decision.amount,
                action=event.action,
                source_event=event.provider_event_id,
                interaction_key=event.interaction_key,
                actor_fid=event.actor_fid,
                creator_fid=event.creator_fid,
            ))

        return IngestResult(
            processed=True,
            reason="recorded" if record.created else "duplicate",
            entry_id=record.entry_id,
            created=record.created,
        )

    async def handle_lifecycle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Store or drop the notification token for a mini-app lifecycle event."""
        name = event_name(payload)
        fid = parse_fid(payload.get("fid"))
        if fid is None:
            raise ValidationError(f"{name} payload is missing fid", {"event_type": name})

        address = await self.resolver.resolve(fid)
        if not address:
            self.logger.warning("Lifecycle event for fid without verified address", fid=fid, event_type=name)
            return {"success": False, "error": "No verified address for this fid"}

        if name in TOKEN_ADDED_EVENTS:
            details = payload.get("notificationDetails") or {}
            if not details.get("token") or not details.get("url"):
                return {"success": True, "message": f"{name} without notification details"}
            await self.dispatcher.register(address, fid, details["token"], details["url"])
            return {"success": True, "message": "Notification token saved"}

        removed = await self.dispatcher.unregister(address)
        return {
            "success": True,
            "message": "Notification token removed" if removed else "No notification token stored",
        }


_webhook_ingestor: Optional[WebhookIngestor] = None


def get_webhook_ingestor() -> WebhookIngestor:
    global _webhook_ingestor
    if _webhook_ingestor is None:
        _webhook_ingestor = WebhookIngestor()
    return _webhook_ingestor
