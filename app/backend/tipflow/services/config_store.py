"""
Creator reward configuration store.
"""

from typing import Any, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from tipflow.core.exceptions import ValidationError
from tipflow.models.user_config import UserConfig
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)

_MUTABLE_FIELDS = {
    "is_active", "token_address",
    "like_amount", "recast_amount", "reply_amount", "follow_amount",
    "like_enabled", "recast_enabled", "reply_enabled", "follow_enabled",
}


class ConfigStore:
    """Lookup and maintenance of UserConfig rows by lower-cased address."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_config(self, address: str) -> Optional[UserConfig]:
        """Active config for ``address``; None when missing or inactive."""
        config = await self._find(normalize_address(address))
        if config is None or not config.is_active:
            return None
        return config

    async def upsert_config(self, address: str, **fields: Any) -> UserConfig:
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown config fields: {sorted(unknown)}")
        if "token_address" in fields:
            fields["token_address"] = normalize_address(fields["token_address"])

        wallet = normalize_address(address)
        config = await self._find(wallet)
        if config is None:
            if "token_address" not in fields:
                raise ValidationError("token_address is required for a new config")
            config = UserConfig(wallet_address=wallet, **fields)
            self.db.add(config)
        else:
            for key, value in fields.items():
                setattr(config, key, value)

        await self.db.flush()
        logger.info("Reward config saved", address=wallet, fields=sorted(fields))
        return config

    async def list_active(self) -> List[UserConfig]:
        result = await self.db.execute(
            select(UserConfig)
            .where(UserConfig.is_active.is_(True))
            .order_by(UserConfig.wallet_address)
        )
        return list(result.scalars().all())

    async def _find(self, wallet: str) -> Optional[UserConfig]:
        result = await self.db.execute(
            select(UserConfig).where(func.lower(UserConfig.wallet_address) == wallet)
        )
        return result.scalars().first()
