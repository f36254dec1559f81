"""
Farcaster mini-app push notifications.

Tokens arrive with ``miniapp_added`` / ``notifications_enabled`` webhooks and
are stored one per wallet. Delivery posts the standard notification payload
to the token's URL with bounded exponential backoff on transient failures;
revoked tokens are deleted so later sends are skipped instead of retried.
Settlement uses ``notify_in_background`` and never waits on delivery.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Set

import aiohttp
import structlog
from sqlalchemy import delete, select, update

from tipflow.core.config import settings, DEFAULT_TOKEN_ADDRESS
from tipflow.core.database import get_async_session, insert_ignoring_conflicts
from tipflow.core.exceptions import ExternalServiceError, TransientExternalError
from tipflow.models.notification import NotificationToken
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)

MAX_TITLE_LENGTH = 32
MAX_BODY_LENGTH = 128
USDC_DECIMALS = 6


class DeliveryOutcome(Enum):
    DELIVERED = "delivered"
    RETRY = "retry"
    REVOKED = "revoked"
    FAILED = "failed"


@dataclass
class DeliveryResponse:
    status: int
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PruneResult:
    user_address: str
    removed: bool
    reason: str


def format_token_amount(amount: int, token_address: str) -> str:
    if token_address.lower() == DEFAULT_TOKEN_ADDRESS:
        value = Decimal(amount) / (Decimal(10) ** USDC_DECIMALS)
        return f"{value.normalize():f} USDC"
    return f"{amount} units"


class NotificationDispatcher:
    """Token storage and delivery for mini-app notifications."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None
    ):
        self.logger = logger.bind(service="notification_dispatcher")
        self.timeout = timeout if timeout is not None else settings.notification_timeout_seconds
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.notification_backoff_base_seconds
        )
        self.backoff_max = (
            backoff_max if backoff_max is not None else settings.notification_backoff_max_seconds
        )
        self._background: Set[asyncio.Task] = set()

        self.stats = {"delivered": 0, "failed": 0, "revoked": 0, "skipped": 0, "retries": 0}

    # Token storage

    async def register(self, address: str, fid: int, token: str, url: str) -> NotificationToken:
        """Store the token for ``address``, replacing any previous one."""
        wallet = normalize_address(address)
        async with get_async_session() as db:
            await db.execute(
                insert_ignoring_conflicts(db, NotificationToken).values(
                    wallet_address=wallet, fid=fid, token=token, delivery_url=url
                )
            )
            await db.execute(
                update(NotificationToken)
                .where(NotificationToken.wallet_address == wallet)
                .values(fid=fid, token=token, delivery_url=url)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                select(NotificationToken).where(NotificationToken.wallet_address == wallet)
            )
            record = result.scalar_one()

        self.logger.info("🔔 Notification token registered", address=wallet, fid=fid)
        return record

    async def unregister(self, address: str) -> bool:
        wallet = normalize_address(address)
        async with get_async_session() as db:
            result = await db.execute(
                delete(NotificationToken).where(NotificationToken.wallet_address == wallet)
            )
        removed = result.rowcount > 0
        if removed:
            self.logger.info("Notification token removed", address=wallet)
        return removed

    async def get_token(self, address: str) -> Optional[NotificationToken]:
        wallet = normalize_address(address)
        async with get_async_session() as db:
            result = await db.execute(
                select(NotificationToken).where(NotificationToken.wallet_address == wallet)
            )
            return result.scalar_one_or_none()

    async def list_tokens(self) -> List[NotificationToken]:
        async with get_async_session() as db:
            result = await db.execute(select(NotificationToken).order_by(NotificationToken.id))
            return list(result.scalars().all())

    # Delivery

    async def notify(
        self,
        address: str,
        title: str,
        message: str,
        target_url: Optional[str] = None,
        notification_id: Optional[str] = None
    ) -> bool:
        """
        Deliver one notification.

        Returns:
            True if the client accepted it, False otherwise
        """
        record = await self.get_token(address)
        if record is None:
            self.stats["skipped"] += 1
            self.logger.debug("No notification token, skipping", address=address)
            return False

        payload = {
            "notificationId": notification_id or str(uuid.uuid4()),
            "title": title[:MAX_TITLE_LENGTH],
            "body": message[:MAX_BODY_LENGTH],
            "targetUrl": target_url or settings.app_url,
            "tokens": [record.token],
        }

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._post(record.delivery_url, payload)
                outcome = self._classify(response, record.token)
            except TransientExternalError as e:
                self.logger.warning(
                    "Notification delivery error",
                    address=record.wallet_address,
                    attempt=attempt,
                    error=e.message
                )
                outcome = DeliveryOutcome.RETRY

            if outcome == DeliveryOutcome.DELIVERED:
                self.stats["delivered"] += 1
                self.logger.info(
                    "📨 Notification delivered",
                    address=record.wallet_address,
                    notification_id=payload["notificationId"]
                )
                return True

            if outcome == DeliveryOutcome.REVOKED:
                self.stats["revoked"] += 1
                self.logger.warning(
                    "Notification token revoked, removing",
                    address=record.wallet_address
                )
                await self.unregister(record.wallet_address)
                return False

            if outcome == DeliveryOutcome.FAILED:
                break

            if attempt < self.max_attempts:
                self.stats["retries"] += 1
                delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
                await asyncio.sleep(delay)

        self.stats["failed"] += 1
        self.logger.error(
            "❌ Notification delivery failed",
            address=record.wallet_address,
            attempts=attempt
        )
        return False

    def notify_in_background(self, delivery: Awaitable[bool]) -> asyncio.Task:
        """Schedule a delivery coroutine without waiting for it."""
        task = asyncio.create_task(self._run_safely(delivery))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def notify_tip_received(
        self,
        address: str,
        amount: int,
        token_address: str,
        entry_count: int,
        batch_id: int
    ) -> bool:
        noun = "engagement" if entry_count == 1 else "engagements"
        return await self.notify(
            address,
            "You received a tip!",
            f"You earned {format_token_amount(amount, token_address)} for {entry_count} {noun}.",
            notification_id=f"tip-{batch_id}-{address.lower()}",
        )

    async def drain(self) -> None:
        """Wait for background deliveries (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def remove_unverified(self, resolver) -> List[PruneResult]:
        """
        Drop tokens whose fid no longer verifies to the stored wallet.

        Lookup failures are reported per user and leave the token in place.
        """
        results: List[PruneResult] = []
        for record in await self.list_tokens():
            try:
                identity = await resolver.refresh_profile(record.fid, raise_on_error=True)
            except ExternalServiceError as e:
                results.append(PruneResult(record.wallet_address, False, f"lookup failed: {e.message}"))
                continue

            if identity is None:
                reason = "no verified address"
            elif identity.address != record.wallet_address:
                reason = "verified address changed"
            else:
                results.append(PruneResult(record.wallet_address, False, "verified"))
                continue

            await self.unregister(record.wallet_address)
            results.append(PruneResult(record.wallet_address, True, reason))

        return results

    async def _run_safely(self, delivery: Awaitable[bool]) -> bool:
        try:
            return await delivery
        except Exception as e:
            self.logger.error("Background notification crashed", error=str(e))
            return False

    def _classify(self, response: DeliveryResponse, token: str) -> DeliveryOutcome:
        if response.status in (404, 410):
            return DeliveryOutcome.REVOKED
        if response.status == 429 or response.status >= 500:
            return DeliveryOutcome.RETRY
        if response.status != 200:
            return DeliveryOutcome.FAILED

        result = response.body.get("result", response.body) or {}
        if token in (result.get("invalidTokens") or []):
            return DeliveryOutcome.REVOKED
        if token in (result.get("rateLimitedTokens") or []):
            return DeliveryOutcome.RETRY
        return DeliveryOutcome.DELIVERED

    async def _post(self, url: str, payload: Dict[str, Any]) -> DeliveryResponse:
        try:
            client_timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(url, json=payload) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {}
                    return DeliveryResponse(status=response.status, body=body or {})
        except asyncio.TimeoutError:
            raise TransientExternalError(f"Timeout posting notification to {url}")
        except aiohttp.ClientError as e:
            raise TransientExternalError(f"Error posting notification to {url}: {e}")


# Global dispatcher instance
_notification_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the process-wide notification dispatcher."""
    global _notification_dispatcher
    if _notification_dispatcher is None:
        _notification_dispatcher = NotificationDispatcher()
    return _notification_dispatcher


async def shutdown_notification_dispatcher() -> None:
    global _notification_dispatcher
    if _notification_dispatcher:
        await _notification_dispatcher.drain()
        _notification_dispatcher = None
