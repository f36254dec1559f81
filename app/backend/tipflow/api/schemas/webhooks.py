"""
Webhook endpoint schemas.
"""

from typing import Optional

from pydantic import Field

from tipflow.api.schemas.common import CamelModel


class WebhookResponse(CamelModel):
    """Acknowledgement returned to the webhook provider."""
    success: bool = True
    queued: bool = False
    processed: Optional[bool] = None
    event_id: Optional[str] = Field(default=None, alias="eventId")
    message: Optional[str] = None
    error: Optional[str] = None
