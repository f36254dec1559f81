"""
Identity providers that map a Farcaster FID to a verified wallet address.

Providers share one capability, ``lookup(fid)``, and are tried in priority
order by the IdentityResolver:

- HubVerificationProvider: free, reads verification messages from a hub
- NeynarBulkProvider: paid, Neynar ``user/bulk`` lookup

``lookup`` returns None when the provider has no verified address for the
fid and raises ExternalServiceError (or TransientExternalError) when the
provider itself misbehaves.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import structlog

from tipflow.core.config import settings
from tipflow.core.exceptions import ExternalServiceError, TransientExternalError
from tipflow.services.types import ResolvedIdentity
from tipflow.utils.validation import is_valid_address


logger = structlog.get_logger(__name__)


class IdentityProvider(Protocol):
    """FID to address lookup capability."""

    name: str

    @property
    def available(self) -> bool: ...

    async def lookup(self, fid: int) -> Optional[ResolvedIdentity]: ...


class JsonHttpClient:
    """Small aiohttp GET helper with a bounded timeout."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.identity_timeout_seconds

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        GET a JSON document.

        Returns None on 404. Raises TransientExternalError for timeouts,
        connection problems, 429 and 5xx; ExternalServiceError for other
        non-2xx responses and for bodies that are not JSON.
        """
        try:
            client_timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url, params=params, headers=headers) as response:
                    if response.status == 404:
                        return None
                    if response.status == 429 or response.status >= 500:
                        raise TransientExternalError(
                            f"{url} returned {response.status}",
                            {"status": response.status}
                        )
                    if response.status != 200:
                        raise ExternalServiceError(
                            f"{url} returned {response.status}",
                            {"status": response.status}
                        )
                    try:
                        return await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError) as e:
                        raise ExternalServiceError(
                            f"{url} returned a non-JSON body",
                            {"status": response.status, "error": str(e)}
                        )
        except asyncio.TimeoutError:
            raise TransientExternalError(f"Timeout calling {url}", {"timeout": self.timeout})
        except aiohttp.ClientError as e:
            raise TransientExternalError(f"Error calling {url}: {e}")


def extract_eth_address(user: Dict[str, Any]) -> Optional[str]:
    """Primary verified ETH address of a Neynar user object, else the first one."""
    verified = user.get("verified_addresses") or {}
    primary = (verified.get("primary") or {}).get("eth_address")
    if primary and is_valid_address(primary):
        return primary.lower()
    for address in verified.get("eth_addresses") or []:
        if is_valid_address(address):
            return address.lower()
    return None


class NeynarClient(JsonHttpClient):
    """Neynar v2 API client for user and cast lookups."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        super().__init__(timeout)
        self.api_key = api_key if api_key is not None else settings.neynar_api_key
        self.base_url = (base_url or settings.neynar_base_url).rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key or "", "accept": "application/json"}

    async def get_users(self, fids: List[int]) -> List[Dict[str, Any]]:
        data = await self._get_json(
            f"{self.base_url}/v2/farcaster/user/bulk",
            params={"fids": ",".join(str(fid) for fid in fids)},
            headers=self._headers()
        )
        return (data or {}).get("users") or []

    async def get_cast(self, cast_hash: str) -> Optional[Dict[str, Any]]:
        data = await self._get_json(
            f"{self.base_url}/v2/farcaster/cast",
            params={"identifier": cast_hash, "type": "hash"},
            headers=self._headers()
        )
        return (data or {}).get("cast")

    async def get_cast_author_fid(self, cast_hash: str) -> Optional[int]:
        cast = await self.get_cast(cast_hash)
        if not cast:
            return None
        return (cast.get("author") or {}).get("fid")


class HubVerificationProvider(JsonHttpClient):
    """Free lookup through a Farcaster hub's verification messages."""

    name = "hub_verification"

    def __init__(self, hub_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(timeout)
        self.hub_url = (hub_url or settings.hub_base_url).rstrip("/")

    @property
    def available(self) -> bool:
        return bool(self.hub_url)

    async def lookup(self, fid: int) -> Optional[ResolvedIdentity]:
        data = await self._get_json(
            f"{self.hub_url}/v1/verificationsByFid",
            params={"fid": fid}
        )
        for message in (data or {}).get("messages") or []:
            body = (message.get("data") or {})
            verification = (
                body.get("verificationAddAddressBody")
                or body.get("verificationAddEthAddressBody")
                or {}
            )
            protocol = verification.get("protocol", "PROTOCOL_ETHEREUM")
            address = verification.get("address")
            if protocol == "PROTOCOL_ETHEREUM" and is_valid_address(address):
                return ResolvedIdentity(fid=fid, address=address.lower(), provider=self.name)
        return None


class NeynarBulkProvider:
    """Paid fallback through Neynar's bulk user endpoint."""

    name = "neynar_bulk"

    def __init__(self, client: Optional[NeynarClient] = None):
        self.client = client or NeynarClient()

    @property
    def available(self) -> bool:
        return self.client.configured

    async def lookup(self, fid: int) -> Optional[ResolvedIdentity]:
        users = await self.client.get_users([fid])
        if not users:
            return None
        user = users[0]
        address = extract_eth_address(user)
        if not address:
            return None
        return ResolvedIdentity(
            fid=fid,
            address=address,
            provider=self.name,
            username=user.get("username"),
            display_name=user.get("display_name"),
            pfp_url=user.get("pfp_url"),
        )


def default_providers(neynar_client: Optional[NeynarClient] = None) -> List[IdentityProvider]:
    """Free verification lookup first, paid bulk lookup second."""
    return [HubVerificationProvider(), NeynarBulkProvider(neynar_client)]
