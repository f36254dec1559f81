"""
Test webhook normalization and the ingest pipeline end to end.
"""

import base64
import json

import pytest

from tipflow.core.database import get_async_session
from tipflow.core.exceptions import TransientExternalError, UnsupportedEventError, ValidationError
from tipflow.models.ledger import LedgerStatus
from tipflow.models.user_config import EngagementAction
from tipflow.services.ledger import LedgerService
from tipflow.services.webhook_ingestor import decode_signed_message, normalize_engagement

from conftest import (
    ACTOR, ACTOR_FID, CREATOR, CREATOR_FID, SECOND_ACTOR_FID, USDC,
    follow_payload, reaction_payload, reply_payload, save_config
)


async def pending_entries():
    async with get_async_session() as db:
        return await LedgerService(db).list_pending(USDC)


def b64url(value: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(value).encode()).decode().rstrip("=")


class TestNormalize:
    """Payload shapes to EngagementEvent."""

    def test_like(self):
        event = normalize_engagement(reaction_payload())

        assert event.action == EngagementAction.LIKE
        assert event.actor_fid == ACTOR_FID
        assert event.creator_fid == CREATOR_FID
        assert event.target_cast_hash == "0xcafe01"
        assert event.provider_event_id == f"reaction:like:{ACTOR_FID}:0xcafe01"

    def test_recast_by_name(self):
        event = normalize_engagement(reaction_payload(reaction_type="recast"))
        assert event.action == EngagementAction.RECAST

    def test_explicit_event_id_wins(self):
        payload = reaction_payload()
        payload["id"] = "neynar-evt-9"
        assert normalize_engagement(payload).provider_event_id == "neynar-evt-9"

    def test_reaction_to_reply_is_unsupported(self):
        with pytest.raises(UnsupportedEventError):
            normalize_engagement(reaction_payload(parent_hash="0xparent"))

    def test_top_level_cast_is_unsupported(self):
        with pytest.raises(UnsupportedEventError):
            normalize_engagement(reply_payload(parent_hash=None))

    def test_reply(self):
        event = normalize_engagement(reply_payload())

        assert event.action == EngagementAction.REPLY
        assert event.creator_fid == CREATOR_FID
        assert event.target_cast_hash == "0xcafe01"
        assert event.provider_event_id == "reply:0xbeef01"

    def test_follow(self):
        event = normalize_engagement(follow_payload())

        assert event.action == EngagementAction.FOLLOW
        assert event.target_cast_hash is None
        assert event.provider_event_id == f"follow:{ACTOR_FID}:{CREATOR_FID}"

    def test_unknown_event_type(self):
        with pytest.raises(UnsupportedEventError):
            normalize_engagement({"type": "user.updated", "data": {}})

    def test_missing_actor_is_malformed(self):
        payload = reaction_payload()
        del payload["data"]["user"]
        with pytest.raises(ValidationError) as exc_info:
            normalize_engagement(payload)
        assert not isinstance(exc_info.value, UnsupportedEventError)

    def test_event_key_alias(self):
        payload = follow_payload()
        payload["event"] = payload.pop("type")
        assert normalize_engagement(payload).action == EngagementAction.FOLLOW


class TestSignedMessage:

    def test_envelope_is_unwrapped(self):
        envelope = {
            "header": b64url({"fid": ACTOR_FID, "type": "custody", "key": "0xkey"}),
            "payload": b64url({"event": "miniapp_removed"}),
            "signature": "c2ln",
        }
        assert decode_signed_message(envelope) == {"event": "miniapp_removed", "fid": ACTOR_FID}

    def test_plain_body_passes_through(self):
        body = {"event": "miniapp_removed", "fid": 7}
        assert decode_signed_message(body) is body

    def test_garbage_envelope(self):
        with pytest.raises(ValidationError):
            decode_signed_message({"header": "!!!", "payload": "!!!", "signature": "x"})


@pytest.mark.usefixtures("database")
class TestIngest:
    """WebhookIngestor.process against a real ledger."""

    @pytest.mark.asyncio
    async def test_like_records_pending_reward(self, ingestor):
        await save_config()

        result = await ingestor.process(normalize_engagement(reaction_payload()))

        assert result.processed
        assert result.reason == "recorded"
        [entry] = await pending_entries()
        assert entry.from_address == CREATOR
        assert entry.to_address == ACTOR
        assert entry.amount == 100
        assert entry.action == EngagementAction.LIKE
        assert entry.status == LedgerStatus.PENDING

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_recorded_once(self, ingestor):
        await save_config()

        event = normalize_engagement(reaction_payload())
        first = await ingestor.process(event)
        second = await ingestor.process(normalize_engagement(reaction_payload()))

        assert first.created and not second.created
        assert second.reason == "duplicate"
        assert second.entry_id == first.entry_id
        assert len(await pending_entries()) == 1

    @pytest.mark.asyncio
    async def test_disabled_action_is_skipped(self, ingestor):
        await save_config(like_enabled=False)

        result = await ingestor.process(normalize_engagement(reaction_payload()))

        assert not result.processed
        assert result.reason == "like rewards disabled"
        assert await pending_entries() == []

    @pytest.mark.asyncio
    async def test_inactive_creator_is_skipped(self, ingestor):
        await save_config(is_active=False)

        result = await ingestor.process(normalize_engagement(reaction_payload()))

        assert result.reason == "creator has no active reward config"

    @pytest.mark.asyncio
    async def test_self_engagement_is_skipped(self, ingestor):
        await save_config()

        result = await ingestor.process(normalize_engagement(reaction_payload(actor_fid=CREATOR_FID)))

        assert result.reason == "self engagement"

    @pytest.mark.asyncio
    async def test_creator_without_address_is_skipped(self, ingestor, provider):
        del provider.addresses[CREATOR_FID]

        result = await ingestor.process(normalize_engagement(reaction_payload()))

        assert result.reason == "creator has no verified address"

    @pytest.mark.asyncio
    async def test_actor_without_address_is_skipped(self, ingestor):
        await save_config()

        result = await ingestor.process(normalize_engagement(reaction_payload(actor_fid=999999)))

        assert result.reason == "actor has no verified address"

    @pytest.mark.asyncio
    async def test_reply_looks_up_parent_author(self, ingestor, neynar):
        await save_config()
        neynar.cast_authors["0xcafe01"] = CREATOR_FID

        result = await ingestor.process(normalize_engagement(reply_payload(parent_author_fid=None)))

        assert result.processed
        assert neynar.calls == ["0xcafe01"]
        [entry] = await pending_entries()
        assert entry.amount == 300

    @pytest.mark.asyncio
    async def test_reply_with_unknown_parent_is_skipped(self, ingestor):
        await save_config()

        result = await ingestor.process(normalize_engagement(reply_payload(parent_author_fid=None)))

        assert result.reason == "creator unknown"

    @pytest.mark.asyncio
    async def test_transient_parent_lookup_error_propagates(self, ingestor, neynar):
        async def failing(cast_hash):
            raise TransientExternalError("neynar down")
        neynar.get_cast_author_fid = failing

        with pytest.raises(TransientExternalError):
            await ingestor.process(normalize_engagement(reply_payload(parent_author_fid=None)))

    @pytest.mark.asyncio
    async def test_like_and_follow_from_same_engager_are_separate(self, ingestor):
        await save_config()

        await ingestor.process(normalize_engagement(reaction_payload()))
        await ingestor.process(normalize_engagement(follow_payload()))
        await ingestor.process(normalize_engagement(reaction_payload(actor_fid=SECOND_ACTOR_FID)))

        entries = await pending_entries()
        assert sorted(e.amount for e in entries) == [100, 100, 400]


@pytest.mark.usefixtures("database")
class TestLifecycle:

    @pytest.mark.asyncio
    async def test_added_event_registers_token(self, ingestor, dispatcher):
        result = await ingestor.handle_lifecycle({
            "event": "miniapp_added",
            "fid": ACTOR_FID,
            "notificationDetails": {"token": "tok-1", "url": "https://api.farcaster.xyz/v1/notify"},
        })

        assert result == {"success": True, "message": "Notification token saved"}
        record = await dispatcher.get_token(ACTOR)
        assert record.token == "tok-1"
        assert record.fid == ACTOR_FID

    @pytest.mark.asyncio
    async def test_removed_event_drops_token(self, ingestor, dispatcher):
        await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", "https://example.com/notify")

        result = await ingestor.handle_lifecycle({"event": "notifications_disabled", "fid": ACTOR_FID})

        assert result["success"]
        assert result["message"] == "Notification token removed"
        assert await dispatcher.get_token(ACTOR) is None

    @pytest.mark.asyncio
    async def test_unresolvable_fid(self, ingestor):
        result = await ingestor.handle_lifecycle({"event": "miniapp_added", "fid": 424242})

        assert result == {"success": False, "error": "No verified address for this fid"}

    @pytest.mark.asyncio
    async def test_missing_fid(self, ingestor):
        with pytest.raises(ValidationError):
            await ingestor.handle_lifecycle({"event": "miniapp_added"})
