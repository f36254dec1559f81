"""
Test notification token storage, delivery retries and pruning.
"""

import pytest

from tipflow.core.exceptions import TransientExternalError
from tipflow.services.notification_dispatcher import DeliveryResponse

from conftest import ACTOR, ACTOR_FID, CREATOR_FID, SECOND_ACTOR, RecordingDispatcher


pytestmark = pytest.mark.usefixtures("database")

NOTIFY_URL = "https://api.farcaster.xyz/v1/frame-notifications"


@pytest.mark.asyncio
async def test_register_replaces_previous_token(dispatcher):
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)
    await dispatcher.register(ACTOR.upper().replace("0X", "0x"), ACTOR_FID, "tok-2", NOTIFY_URL)

    records = await dispatcher.list_tokens()
    assert len(records) == 1
    assert records[0].token == "tok-2"
    assert records[0].wallet_address == ACTOR


@pytest.mark.asyncio
async def test_notify_posts_standard_payload(dispatcher):
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

    delivered = await dispatcher.notify(ACTOR, "T" * 40, "hello", notification_id="n-1")

    assert delivered
    [post] = dispatcher.posts
    assert post["url"] == NOTIFY_URL
    assert post["payload"]["notificationId"] == "n-1"
    assert post["payload"]["tokens"] == ["tok-1"]
    assert len(post["payload"]["title"]) == 32


@pytest.mark.asyncio
async def test_notify_without_token_is_skipped(dispatcher):
    assert not await dispatcher.notify(ACTOR, "title", "body")
    assert dispatcher.posts == []
    assert dispatcher.stats["skipped"] == 1


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    dispatcher = RecordingDispatcher([
        DeliveryResponse(500),
        TransientExternalError("connection reset"),
        DeliveryResponse(200, {"result": {"successfulTokens": ["tok-1"]}}),
    ])
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

    assert await dispatcher.notify(ACTOR, "title", "body")
    assert len(dispatcher.posts) == 3
    assert dispatcher.stats["retries"] == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    dispatcher = RecordingDispatcher([DeliveryResponse(503)] * 5, max_attempts=3)
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

    assert not await dispatcher.notify(ACTOR, "title", "body")
    assert len(dispatcher.posts) == 3
    assert dispatcher.stats["failed"] == 1
    assert await dispatcher.get_token(ACTOR) is not None


@pytest.mark.asyncio
async def test_invalid_token_is_removed():
    dispatcher = RecordingDispatcher([DeliveryResponse(200, {"result": {"invalidTokens": ["tok-1"]}})])
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

    assert not await dispatcher.notify(ACTOR, "title", "body")
    assert await dispatcher.get_token(ACTOR) is None

    # Later sends are skipped without a request
    assert not await dispatcher.notify(ACTOR, "title", "body")
    assert len(dispatcher.posts) == 1


@pytest.mark.asyncio
async def test_gone_token_is_removed():
    dispatcher = RecordingDispatcher([DeliveryResponse(404)])
    await dispatcher.register(ACTOR, ACTOR_FID, "tok-1", NOTIFY_URL)

    assert not await dispatcher.notify(ACTOR, "title", "body")
    assert dispatcher.stats["revoked"] == 1
    assert await dispatcher.get_token(ACTOR) is None


@pytest.mark.asyncio
async def test_background_delivery_errors_are_contained(dispatcher):
    async def broken():
        raise RuntimeError("boom")

    task = dispatcher.notify_in_background(broken())
    await dispatcher.drain()

    assert task.result() is False


@pytest.mark.asyncio
async def test_remove_unverified(dispatcher, resolver, provider):
    stale = "0x" + "dd" * 20
    flaky = "0x" + "ff" * 20
    provider.failing.add(6666)

    await dispatcher.register(ACTOR, ACTOR_FID, "tok-actor", NOTIFY_URL)
    # Stored under SECOND_ACTOR but the fid now verifies to the creator
    await dispatcher.register(SECOND_ACTOR, CREATOR_FID, "tok-moved", NOTIFY_URL)
    await dispatcher.register(stale, 5555, "tok-stale", NOTIFY_URL)
    await dispatcher.register(flaky, 6666, "tok-flaky", NOTIFY_URL)

    results = {r.user_address: r for r in await dispatcher.remove_unverified(resolver)}

    assert not results[ACTOR].removed
    assert results[SECOND_ACTOR].removed
    assert results[SECOND_ACTOR].reason == "verified address changed"
    assert results[stale].removed
    assert results[stale].reason == "no verified address"
    assert not results[flaky].removed
    assert results[flaky].reason.startswith("lookup failed")

    remaining = sorted(r.wallet_address for r in await dispatcher.list_tokens())
    assert remaining == sorted([ACTOR, flaky])

