"""
Notification endpoint schemas (camelCase on the wire, as the mini-app expects).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from tipflow.api.schemas.common import CamelModel


class TokenData(CamelModel):
    fid: int
    url: str
    added_at: Optional[datetime] = Field(default=None, alias="addedAt")


class NotificationStatusResponse(CamelModel):
    success: bool = True
    has_notification_tokens: bool = Field(alias="hasNotificationTokens")
    message: str
    token_data: Optional[TokenData] = Field(default=None, alias="tokenData")


class NotificationUser(CamelModel):
    user_address: str = Field(alias="userAddress")
    fid: int


class NotificationUsersResponse(CamelModel):
    success: bool = True
    total_users: int = Field(alias="totalUsers")
    users: List[NotificationUser]


class TestNotificationRequest(CamelModel):
    user_address: str = Field(alias="userAddress")
    title: str = Field(default="TipFlow", min_length=1)
    message: str = Field(min_length=1)
    target_url: Optional[str] = Field(default=None, alias="targetUrl")


class TestNotificationResponse(CamelModel):
    success: bool
    error: Optional[str] = None


class RemovalResult(CamelModel):
    user_address: str = Field(alias="userAddress")
    removed: bool
    reason: str


class RemoveUnverifiedResponse(CamelModel):
    success: bool = True
    total_users: int = Field(alias="totalUsers")
    removed_count: int = Field(alias="removedCount")
    error_count: int = Field(alias="errorCount")
    results: List[RemovalResult]
