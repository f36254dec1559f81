"""
Shared fixtures: a fresh SQLite database per test, fake identity providers,
a recording notification dispatcher and the in-process batch tip contract.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from tipflow.core.database import DatabaseManager, close_database, get_async_session, init_database
from tipflow.core.exceptions import TransientExternalError
from tipflow.services.config_store import ConfigStore
from tipflow.services.identity_resolver import IdentityResolver
from tipflow.services.notification_dispatcher import DeliveryResponse, NotificationDispatcher
from tipflow.services.reward_engine import RewardPolicy
from tipflow.services.settlement.local_contract import LocalBatchTipContract, LocalChainGateway
from tipflow.services.types import ResolvedIdentity
from tipflow.services.webhook_ingestor import WebhookIngestor


USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
OTHER_TOKEN = "0x4200000000000000000000000000000000000006"

CREATOR_FID = 1001
CREATOR = "0x" + "c1" * 20
ACTOR_FID = 242597
ACTOR = "0x" + "a2" * 20
SECOND_ACTOR_FID = 3003
SECOND_ACTOR = "0x" + "b3" * 20

OWNER = "0x" + "0e" * 20
EXECUTOR = "0x" + "ee" * 20


class FakeProvider:
    """Identity provider answering from a dict; ``failing`` fids raise."""

    def __init__(
        self,
        addresses: Optional[Dict[int, str]] = None,
        name: str = "fake",
        failing: Iterable[int] = (),
        fail_all: bool = False,
        delay: float = 0.0,
        available: bool = True
    ):
        self.name = name
        self.addresses = dict(addresses or {})
        self.failing = set(failing)
        self.fail_all = fail_all
        self.delay = delay
        self._available = available
        self.calls: List[int] = []

    @property
    def available(self) -> bool:
        return self._available

    async def lookup(self, fid: int) -> Optional[ResolvedIdentity]:
        self.calls.append(fid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_all or fid in self.failing:
            raise TransientExternalError(f"{self.name} unavailable")
        address = self.addresses.get(fid)
        if not address:
            return None
        return ResolvedIdentity(fid=fid, address=address.lower(), provider=self.name)


class FakeNeynar:
    """Cast author lookups for replies whose payload lacks the parent author."""

    def __init__(self, cast_authors: Optional[Dict[str, int]] = None):
        self.cast_authors = dict(cast_authors or {})
        self.calls: List[str] = []

    async def get_cast_author_fid(self, cast_hash: str) -> Optional[int]:
        self.calls.append(cast_hash)
        return self.cast_authors.get(cast_hash)


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher whose HTTP layer replays scripted responses."""

    def __init__(self, responses: Optional[List] = None, **kwargs):
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("max_attempts", 3)
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.posts: List[dict] = []

    async def _post(self, url, payload):
        self.posts.append({"url": url, "payload": payload})
        response = self.responses.pop(0) if self.responses else DeliveryResponse(200, {})
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
async def database(tmp_path):
    await close_database()
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'tipflow.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def provider():
    return FakeProvider({CREATOR_FID: CREATOR, ACTOR_FID: ACTOR, SECOND_ACTOR_FID: SECOND_ACTOR})


@pytest.fixture
def resolver(provider):
    return IdentityResolver(providers=[provider], negative_ttl=60, timeout=1)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def neynar():
    return FakeNeynar()


@pytest.fixture
def ingestor(resolver, neynar, dispatcher):
    return WebhookIngestor(resolver=resolver, neynar=neynar, dispatcher=dispatcher, policy=RewardPolicy())


@pytest.fixture
def contract():
    contract = LocalBatchTipContract(owner=OWNER, enforce_balances=False)
    contract.roles.add_executor(OWNER, EXECUTOR)
    return contract


@pytest.fixture
def gateway(contract):
    return LocalChainGateway(contract, EXECUTOR)


async def save_config(address: str = CREATOR, **fields):
    values = {
        "token_address": USDC,
        "is_active": True,
        "like_amount": 100,
        "recast_amount": 200,
        "reply_amount": 300,
        "follow_amount": 400,
        "like_enabled": True,
        "recast_enabled": True,
        "reply_enabled": True,
        "follow_enabled": True,
    }
    values.update(fields)
    async with get_async_session() as db:
        return await ConfigStore(db).upsert_config(address, **values)


def reaction_payload(
    actor_fid: int = ACTOR_FID,
    creator_fid: int = CREATOR_FID,
    reaction_type=1,
    cast_hash: str = "0xcafe01",
    parent_hash: Optional[str] = None
) -> dict:
    return {
        "created_at": 1727000000,
        "type": "reaction.created",
        "data": {
            "object": "reaction",
            "reaction_type": reaction_type,
            "timestamp": "2024-09-22T10:13:20.000Z",
            "user": {"fid": actor_fid, "username": "engager"},
            "cast": {
                "hash": cast_hash,
                "parent_hash": parent_hash,
                "author": {"fid": creator_fid},
            },
        },
    }


def reply_payload(
    actor_fid: int = ACTOR_FID,
    parent_author_fid: Optional[int] = CREATOR_FID,
    reply_hash: str = "0xbeef01",
    parent_hash: Optional[str] = "0xcafe01"
) -> dict:
    data = {
        "object": "cast",
        "hash": reply_hash,
        "parent_hash": parent_hash,
        "author": {"fid": actor_fid},
        "text": "great post",
    }
    if parent_author_fid is not None:
        data["parent_author"] = {"fid": parent_author_fid}
    return {"created_at": 1727000100, "type": "cast.created", "data": data}


def follow_payload(actor_fid: int = ACTOR_FID, creator_fid: int = CREATOR_FID) -> dict:
    return {
        "created_at": 1727000200,
        "type": "follow.created",
        "data": {
            "object": "follow",
            "user": {"fid": actor_fid},
            "target_user": {"fid": creator_fid},
        },
    }
