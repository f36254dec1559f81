"""
Webhook routes.

Engagement events are normalized, queued and acknowledged immediately; the
EventProcessor does the rest. Mini-app lifecycle events are handled inline.
"""

import json

from fastapi import APIRouter, Depends, Request

import structlog

from tipflow.api.dependencies import get_ingestor, get_processor
from tipflow.api.schemas.webhooks import WebhookResponse
from tipflow.core.config import settings
from tipflow.core.exceptions import UnsupportedEventError, ValidationError, WebhookSignatureError
from tipflow.services.event_processor import EventProcessor
from tipflow.services.webhook_ingestor import (
    LIFECYCLE_EVENTS, WebhookIngestor, decode_signed_message, event_name, normalize_engagement
)
from tipflow.utils.validation import verify_webhook_signature


router = APIRouter(tags=["Webhooks"])
logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Neynar-Signature"


async def _handle_webhook(
    request: Request,
    ingestor: WebhookIngestor,
    processor: EventProcessor
) -> WebhookResponse:
    body = await request.body()

    if settings.webhook_secret and not verify_webhook_signature(
        settings.webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
    ):
        raise WebhookSignatureError(f"missing or invalid {SIGNATURE_HEADER} header")

    try:
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise ValueError("webhook body must be a JSON object")
        payload = decode_signed_message(payload)
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed webhook body", error=str(e))
        return WebhookResponse(success=False, error="Malformed webhook body")

    name = event_name(payload)
    if name in LIFECYCLE_EVENTS:
        result = await ingestor.handle_lifecycle(payload)
        return WebhookResponse(processed=result["success"], **result)

    try:
        event = normalize_engagement(payload)
    except UnsupportedEventError as e:
        logger.debug("Webhook event ignored", event_type=name, reason=e.reason)
        return WebhookResponse(processed=False, message=e.reason)
    except ValidationError as e:
        logger.warning("Invalid engagement payload", event_type=name, error=e.message)
        return WebhookResponse(success=False, error=e.message)

    await processor.submit(event)
    return WebhookResponse(queued=True, event_id=event.provider_event_id, message="Engagement queued")


@router.post("/farcaster", response_model=WebhookResponse, response_model_exclude_none=True)
async def farcaster_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
    processor: EventProcessor = Depends(get_processor)
):
    """Farcaster mini-app and engagement webhook."""
    return await _handle_webhook(request, ingestor, processor)


@router.post("/neynar", response_model=WebhookResponse, response_model_exclude_none=True)
async def neynar_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_ingestor),
    processor: EventProcessor = Depends(get_processor)
):
    """Neynar engagement webhook (same handling, provider-specific URL)."""
    return await _handle_webhook(request, ingestor, processor)
