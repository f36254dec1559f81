"""
API dependencies for FastAPI endpoints.
Provides the database session, service singletons and path validation.
"""

from typing import AsyncGenerator

from fastapi import Path
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from tipflow.core.database import get_async_session
from tipflow.scheduler.settlement_scheduler import SettlementScheduler, get_settlement_scheduler
from tipflow.services.event_processor import EventProcessor, get_event_processor
from tipflow.services.identity_resolver import IdentityResolver, get_identity_resolver
from tipflow.services.notification_dispatcher import (
    NotificationDispatcher, get_notification_dispatcher
)
from tipflow.services.webhook_ingestor import WebhookIngestor, get_webhook_ingestor
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_async_session() as session:
        yield session


async def get_processor() -> EventProcessor:
    return await get_event_processor()


def get_ingestor() -> WebhookIngestor:
    return get_webhook_ingestor()


def get_resolver() -> IdentityResolver:
    return get_identity_resolver()


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


def get_scheduler() -> SettlementScheduler:
    return get_settlement_scheduler()


async def validate_address_param(
    address: str = Path(..., description="Ethereum address (0x + 40 hex)")
) -> str:
    """Normalize the address path parameter; raises ValidationError (400)."""
    return normalize_address(address)
