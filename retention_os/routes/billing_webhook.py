"""
Billing webhook receiver.

Verifies the signature, queues the event for the consumer and answers 200
right away. Processing happens in jobs/webhook_consumer.py.
"""

from fastapi import APIRouter, Depends, Request

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.billing_domain import HANDLED_EVENT_TYPES
from retention_os.services.webhook_service import (
    SIGNATURE_HEADER,
    WebhookService,
    parse_event,
    verify_signature,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_webhook_service() -> WebhookService:
    return WebhookService()


@router.post("/webhook")
async def billing_webhook(
    request: Request, webhooks: WebhookService = Depends(get_webhook_service)
):
    raw = await request.body()
    verify_signature(raw, request.headers.get(SIGNATURE_HEADER), settings.BILLING_WEBHOOK_SECRET)
    event = parse_event(raw)

    if event.type not in HANDLED_EVENT_TYPES:
        logger.info("Webhook type not handled", event_id=event.id, event_type=event.type)
        return {"received": True, "queued": False, "duplicate": False}

    queued = await webhooks.enqueue(event)
    return {"received": True, "queued": queued, "duplicate": not queued}
