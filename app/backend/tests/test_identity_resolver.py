"""
Test FID resolution: provider fallback, caching and failure handling.
"""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tipflow.core.database import get_async_session
from tipflow.core.exceptions import ExternalServiceError
from tipflow.models.user_profile import UserProfile
from tipflow.services.identity_providers import HubVerificationProvider
from tipflow.services.identity_resolver import IdentityResolver

from conftest import ACTOR, ACTOR_FID, CREATOR, CREATOR_FID, FakeProvider


pytestmark = pytest.mark.usefixtures("database")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_falls_back_to_next_provider_and_stores_profile():
    hub = FakeProvider({}, name="hub", failing=[ACTOR_FID])
    neynar = FakeProvider({ACTOR_FID: ACTOR}, name="neynar")
    resolver = IdentityResolver(providers=[hub, neynar], negative_ttl=60, timeout=1)

    assert await resolver.resolve(ACTOR_FID) == ACTOR
    assert hub.calls == [ACTOR_FID]
    assert neynar.calls == [ACTOR_FID]

    async with get_async_session() as db:
        profile = await db.get(UserProfile, ACTOR_FID)
    assert profile.wallet_address == ACTOR
    assert profile.resolved_via == "neynar"

    # Second lookup is served from the stored profile
    assert await resolver.resolve(ACTOR_FID) == ACTOR
    assert neynar.calls == [ACTOR_FID]
    assert resolver.stats["cache_hits"] == 1


@pytest.mark.asyncio
async def test_unavailable_providers_are_skipped():
    disabled = FakeProvider({ACTOR_FID: CREATOR}, name="disabled", available=False)
    hub = FakeProvider({ACTOR_FID: ACTOR}, name="hub")
    resolver = IdentityResolver(providers=[disabled, hub], negative_ttl=60, timeout=1)

    assert await resolver.resolve(ACTOR_FID) == ACTOR
    assert disabled.calls == []


@pytest.mark.asyncio
async def test_negative_answers_expire_after_ttl():
    clock = FakeClock()
    provider = FakeProvider({})
    resolver = IdentityResolver(providers=[provider], negative_ttl=60, timeout=1, clock=clock)

    assert await resolver.resolve(CREATOR_FID) is None
    assert await resolver.resolve(CREATOR_FID) is None
    assert provider.calls == [CREATOR_FID]
    assert resolver.stats["negative_hits"] == 1

    # User adds a verification; visible once the negative entry expires
    provider.addresses[CREATOR_FID] = CREATOR
    clock.now += 61
    assert await resolver.resolve(CREATOR_FID) == CREATOR
    assert provider.calls == [CREATOR_FID, CREATOR_FID]


@pytest.mark.asyncio
async def test_provider_errors_are_not_negatively_cached():
    provider = FakeProvider({ACTOR_FID: ACTOR}, fail_all=True)
    resolver = IdentityResolver(providers=[provider], negative_ttl=60, timeout=1)

    assert await resolver.resolve(ACTOR_FID) is None

    provider.fail_all = False
    assert await resolver.resolve(ACTOR_FID) == ACTOR
    assert len(provider.calls) == 2
    assert resolver.stats["provider_errors"] == 1


@pytest.mark.asyncio
async def test_timeout_resolves_to_none():
    provider = FakeProvider({ACTOR_FID: ACTOR}, delay=2.0)
    resolver = IdentityResolver(providers=[provider], negative_ttl=60, timeout=0.05)

    assert await resolver.resolve(ACTOR_FID) is None
    assert resolver.stats["provider_errors"] == 1
    assert ACTOR_FID not in resolver._negative_cache


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_provider_call():
    provider = FakeProvider({ACTOR_FID: ACTOR}, delay=0.2)
    resolver = IdentityResolver(providers=[provider], negative_ttl=60, timeout=5)

    results = await asyncio.gather(*(resolver.resolve(ACTOR_FID) for _ in range(5)))

    assert results == [ACTOR] * 5
    assert provider.calls == [ACTOR_FID]


@pytest.mark.asyncio
async def test_refresh_profile_rewrites_stored_address():
    provider = FakeProvider({ACTOR_FID: ACTOR})
    resolver = IdentityResolver(providers=[provider], negative_ttl=60, timeout=1)
    await resolver.resolve(ACTOR_FID)

    provider.addresses[ACTOR_FID] = CREATOR
    identity = await resolver.refresh_profile(ACTOR_FID)

    assert identity.address == CREATOR
    assert await resolver.resolve(ACTOR_FID) == CREATOR


@pytest.mark.asyncio
async def test_refresh_profile_raises_when_providers_fail():
    resolver = IdentityResolver(providers=[FakeProvider(fail_all=True)], negative_ttl=60, timeout=1)

    assert await resolver.refresh_profile(ACTOR_FID) is None
    with pytest.raises(ExternalServiceError):
        await resolver.refresh_profile(ACTOR_FID, raise_on_error=True)


class GarbageProvider:
    """Provider whose response parsing blows up with a non-service error."""

    name = "garbage"
    available = True

    async def lookup(self, fid):
        raise KeyError("verified_addresses")


@pytest.mark.asyncio
async def test_unexpected_provider_errors_fall_through():
    neynar = FakeProvider({ACTOR_FID: ACTOR}, name="neynar")
    resolver = IdentityResolver(providers=[GarbageProvider(), neynar], negative_ttl=60, timeout=1)

    assert await resolver.resolve(ACTOR_FID) == ACTOR
    assert resolver.stats["provider_errors"] == 1


async def maintenance_page(request):
    return web.Response(text="<html>hub maintenance</html>", content_type="text/html")


@pytest.mark.asyncio
async def test_maintenance_page_resolves_to_none():
    app = web.Application()
    app.router.add_get("/v1/verificationsByFid", maintenance_page)

    async with TestServer(app) as server:
        hub = HubVerificationProvider(hub_url=str(server.make_url("/")), timeout=5)
        resolver = IdentityResolver(providers=[hub], negative_ttl=60, timeout=5)

        assert await resolver.resolve(ACTOR_FID) is None

    assert resolver.stats["provider_errors"] == 1
    # Provider errors are not cached as a negative answer
    assert ACTOR_FID not in resolver._negative_cache
