"""
Notification token routes used by the mini-app and operators.
"""

from fastapi import APIRouter, Depends

import structlog

from tipflow.api.dependencies import get_dispatcher, get_resolver, validate_address_param
from tipflow.api.schemas.notifications import (
    NotificationStatusResponse, NotificationUser, NotificationUsersResponse, RemovalResult,
    RemoveUnverifiedResponse, TestNotificationRequest, TestNotificationResponse, TokenData
)
from tipflow.services.identity_resolver import IdentityResolver
from tipflow.services.notification_dispatcher import NotificationDispatcher
from tipflow.utils.validation import normalize_address


router = APIRouter(tags=["Notifications"])
logger = structlog.get_logger(__name__)


@router.get(
    "/notification-status/{address}",
    response_model=NotificationStatusResponse,
    response_model_exclude_none=True
)
async def notification_status(
    address: str = Depends(validate_address_param),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Whether ``address`` has a stored notification token."""
    record = await dispatcher.get_token(address)
    if record is None:
        return NotificationStatusResponse(
            has_notification_tokens=False,
            message="No notification token stored for this address",
        )
    return NotificationStatusResponse(
        has_notification_tokens=True,
        message="Notification token found",
        token_data=TokenData(fid=record.fid, url=record.delivery_url, added_at=record.added_at),
    )


@router.get("/notification-users", response_model=NotificationUsersResponse)
async def notification_users(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    records = await dispatcher.list_tokens()
    return NotificationUsersResponse(
        total_users=len(records),
        users=[NotificationUser(user_address=r.wallet_address, fid=r.fid) for r in records],
    )


@router.post(
    "/test-notification",
    response_model=TestNotificationResponse,
    response_model_exclude_none=True
)
async def test_notification(
    request: TestNotificationRequest,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Send one notification synchronously and report whether it was delivered."""
    address = normalize_address(request.user_address)
    if await dispatcher.get_token(address) is None:
        return TestNotificationResponse(success=False, error="No notification token for this address")

    delivered = await dispatcher.notify(
        address, request.title, request.message, target_url=request.target_url
    )
    if not delivered:
        return TestNotificationResponse(success=False, error="Notification delivery failed")
    return TestNotificationResponse(success=True)


@router.post("/remove-unverified-users", response_model=RemoveUnverifiedResponse)
async def remove_unverified_users(
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    resolver: IdentityResolver = Depends(get_resolver)
):
    """Drop notification tokens whose fid no longer verifies to the stored address."""
    results = await dispatcher.remove_unverified(resolver)
    removed = sum(1 for r in results if r.removed)
    errors = sum(1 for r in results if r.reason.startswith("lookup failed"))

    logger.info(
        "🧹 Unverified notification users processed",
        total=len(results),
        removed=removed,
        errors=errors
    )
    return RemoveUnverifiedResponse(
        total_users=len(results),
        removed_count=removed,
        error_count=errors,
        results=[
            RemovalResult(user_address=r.user_address, removed=r.removed, reason=r.reason)
            for r in results
        ],
    )
