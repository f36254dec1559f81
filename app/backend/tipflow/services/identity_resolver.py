"""
Identity resolver: FID to verified wallet address.

Resolution order:
1. cached UserProfile row (kept indefinitely)
2. providers in priority order (free hub verification, then paid Neynar bulk)

Negative answers are remembered in memory for a short TTL only, since users
add verifications all the time. Provider failures and timeouts never raise:
``resolve`` returns None and the caller skips the engagement. Concurrent
lookups for the same fid share one in-flight provider call.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Tuple

import structlog

from tipflow.core.config import settings
from tipflow.core.database import get_async_session, insert_ignoring_conflicts
from tipflow.core.exceptions import ExternalServiceError
from tipflow.models.user_profile import UserProfile
from tipflow.services.identity_providers import IdentityProvider, default_providers
from tipflow.services.types import ResolvedIdentity


logger = structlog.get_logger(__name__)


class IdentityResolver:
    """Cached, coalescing FID to address resolution over a provider chain."""

    def __init__(
        self,
        providers: Optional[Iterable[IdentityProvider]] = None,
        negative_ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.logger = logger.bind(service="identity_resolver")
        self.providers = list(providers) if providers is not None else default_providers()
        self.negative_ttl = (
            negative_ttl if negative_ttl is not None else settings.identity_negative_ttl_seconds
        )
        self.timeout = timeout if timeout is not None else settings.identity_timeout_seconds
        self._clock = clock

        self._negative_cache: Dict[int, float] = {}
        self._inflight: Dict[int, asyncio.Future] = {}

        self.stats = {
            "cache_hits": 0,
            "negative_hits": 0,
            "provider_lookups": 0,
            "provider_errors": 0,
            "coalesced": 0,
            "not_found": 0,
        }

    async def resolve(self, fid: int) -> Optional[str]:
        """Verified address for ``fid`` or None."""
        identity = await self.resolve_identity(fid)
        return identity.address if identity else None

    async def refresh_profile(self, fid: int, raise_on_error: bool = False) -> Optional[ResolvedIdentity]:
        """
        Bypass the cache and rewrite the stored profile from the providers.

        With ``raise_on_error`` an empty answer caused by provider failures
        raises ExternalServiceError instead of returning None.
        """
        identity, had_error = await self._resolve_uncached(fid, refresh=True)
        if identity is None and had_error and raise_on_error:
            raise ExternalServiceError(
                f"Identity providers unavailable for fid {fid}", {"fid": fid}
            )
        return identity

    def invalidate(self, fid: int) -> None:
        self._negative_cache.pop(fid, None)

    async def resolve_identity(self, fid: int, refresh: bool = False) -> Optional[ResolvedIdentity]:
        if not refresh:
            cached = await self._load_cached(fid)
            if cached:
                self.stats["cache_hits"] += 1
                return cached

            expires_at = self._negative_cache.get(fid)
            if expires_at is not None:
                if expires_at > self._clock():
                    self.stats["negative_hits"] += 1
                    return None
                del self._negative_cache[fid]

        identity, _ = await self._resolve_uncached(fid, refresh)
        return identity

    async def _resolve_uncached(
        self,
        fid: int,
        refresh: bool
    ) -> Tuple[Optional[ResolvedIdentity], bool]:
        pending = self._inflight.get(fid)
        if pending is not None:
            self.stats["coalesced"] += 1
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[fid] = future
        try:
            outcome = await self._lookup(fid)
            if outcome[0]:
                await self._store(outcome[0], refresh)
            future.set_result(outcome)
            return outcome
        finally:
            self._inflight.pop(fid, None)
            if not future.done():
                future.set_result((None, True))

    async def _lookup(self, fid: int) -> Tuple[Optional[ResolvedIdentity], bool]:
        had_error = False

        for provider in self.providers:
            if not provider.available:
                continue

            self.stats["provider_lookups"] += 1
            try:
                identity = await asyncio.wait_for(provider.lookup(fid), timeout=self.timeout)
            except asyncio.TimeoutError:
                had_error = True
                self.stats["provider_errors"] += 1
                self.logger.warning("Identity provider timed out", provider=provider.name, fid=fid)
                continue
            except ExternalServiceError as e:
                had_error = True
                self.stats["provider_errors"] += 1
                self.logger.warning(
                    "Identity provider failed",
                    provider=provider.name,
                    fid=fid,
                    error=e.message
                )
                continue
            except Exception as e:
                had_error = True
                self.stats["provider_errors"] += 1
                self.logger.error(
                    "Identity provider returned an unusable response",
                    provider=provider.name,
                    fid=fid,
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue

            if identity:
                self._negative_cache.pop(fid, None)
                self.logger.info(
                    "🔎 Resolved fid",
                    fid=fid,
                    address=identity.address,
                    provider=provider.name
                )
                return identity, had_error

        self.stats["not_found"] += 1
        if not had_error:
            self._negative_cache[fid] = self._clock() + self.negative_ttl
        self.logger.info("No verified address for fid", fid=fid, provider_error=had_error)
        return None, had_error

    async def _load_cached(self, fid: int) -> Optional[ResolvedIdentity]:
        async with get_async_session() as session:
            profile = await session.get(UserProfile, fid)
            if profile is None:
                return None
            return ResolvedIdentity(
                fid=profile.fid,
                address=profile.wallet_address,
                provider=profile.resolved_via,
                username=profile.username,
                display_name=profile.display_name,
                pfp_url=profile.pfp_url,
            )

    async def _store(self, identity: ResolvedIdentity, refresh: bool) -> None:
        values = {
            "fid": identity.fid,
            "wallet_address": identity.address,
            "username": identity.username,
            "display_name": identity.display_name,
            "pfp_url": identity.pfp_url,
            "resolved_via": identity.provider,
        }
        async with get_async_session() as session:
            if refresh:
                profile = await session.get(UserProfile, identity.fid)
                if profile is not None:
                    for key, value in values.items():
                        setattr(profile, key, value)
                    profile.refreshed_at = datetime.utcnow()
                    return
            await session.execute(insert_ignoring_conflicts(session, UserProfile).values(**values))


# Global resolver instance
_identity_resolver: Optional[IdentityResolver] = None


def get_identity_resolver() -> IdentityResolver:
    """Get the process-wide identity resolver."""
    global _identity_resolver
    if _identity_resolver is None:
        _identity_resolver = IdentityResolver()
    return _identity_resolver
