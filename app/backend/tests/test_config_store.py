"""
Test creator reward config lookups.
"""

import pytest

from tipflow.core.database import get_async_session
from tipflow.core.exceptions import ValidationError
from tipflow.models.user_config import EngagementAction
from tipflow.services.config_store import ConfigStore

from conftest import CREATOR, USDC, save_config


pytestmark = pytest.mark.usefixtures("database")


@pytest.mark.asyncio
async def test_lookup_is_case_insensitive():
    await save_config(CREATOR.upper().replace("0X", "0x"))

    async with get_async_session() as db:
        config = await ConfigStore(db).get_config(CREATOR)

    assert config is not None
    assert config.wallet_address == CREATOR
    assert config.token_address == USDC
    assert config.amount_for(EngagementAction.REPLY) == 300
    assert config.is_enabled(EngagementAction.FOLLOW)


@pytest.mark.asyncio
async def test_inactive_config_is_hidden():
    await save_config(is_active=False)

    async with get_async_session() as db:
        store = ConfigStore(db)
        assert await store.get_config(CREATOR) is None
        assert await store.list_active() == []


@pytest.mark.asyncio
async def test_upsert_updates_existing_row():
    await save_config()
    await save_config(like_amount=5, recast_enabled=False)

    async with get_async_session() as db:
        config = await ConfigStore(db).get_config(CREATOR)
        active = await ConfigStore(db).list_active()

    assert config.like_amount == 5
    assert not config.is_enabled(EngagementAction.RECAST)
    assert len(active) == 1


@pytest.mark.asyncio
async def test_new_config_requires_token():
    with pytest.raises(ValidationError):
        async with get_async_session() as db:
            await ConfigStore(db).upsert_config(CREATOR, like_amount=1)


@pytest.mark.asyncio
async def test_unknown_fields_are_rejected():
    with pytest.raises(ValidationError):
        async with get_async_session() as db:
            await ConfigStore(db).upsert_config(CREATOR, token_address=USDC, tip_everyone=True)


@pytest.mark.asyncio
async def test_invalid_address_is_rejected():
    with pytest.raises(ValidationError):
        async with get_async_session() as db:
            await ConfigStore(db).get_config("not-an-address")
