"""
Billing webhook consumer.

Claims verified events from the Redis queue filled by POST /billing/webhook
and applies them with bounded retry and exponential backoff. Events that
keep failing are moved to the dead-letter list with the last error.

A claimed envelope stays in the processing list until it has been handled,
so a worker that dies mid-event leaves it for recover() on the next start.
The processed marker that lets the route skip redeliveries is written only
after processing commits.
"""

import asyncio
import json
import time

from pydantic import ValidationError

from retention_os.config import settings
from retention_os.db.helpers import TRANSIENT_ERRORS, DatabaseError
from retention_os.errors import DuplicateEvent, RetentionError
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.billing_domain import BillingWebhookEvent
from retention_os.services.redis_client import fast_redis
from retention_os.services.webhook_service import WebhookService, processed_key

logger = get_logger(__name__)

POP_TIMEOUT_SECONDS = 5


class WebhookConsumer:
    def __init__(
        self,
        service: WebhookService | None = None,
        queue=fast_redis,
        *,
        max_attempts: int | None = None,
        backoff_base_s: float | None = None,
    ):
        self.service = service or WebhookService()
        self.queue = queue
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base_s = (
            settings.WEBHOOK_BACKOFF_BASE_SECONDS if backoff_base_s is None else backoff_base_s
        )

    async def handle(self, raw: str) -> str:
        """
        Process one queued envelope.

        Returns:
            The processing outcome, "duplicate", or "dead_lettered"
        """
        try:
            event = BillingWebhookEvent.model_validate(json.loads(raw)["event"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            await self._dead_letter(raw, f"unreadable envelope: {e}", attempts=0)
            return "dead_lettered"

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = await self.service.process_event(event)
            except DuplicateEvent:
                logger.info("Webhook already processed", event_id=event.id)
                outcome = "duplicate"
            except RetentionError as e:
                await self._dead_letter(raw, e.message, attempts=attempt)
                return "dead_lettered"
            except (DatabaseError, *TRANSIENT_ERRORS) as e:
                if not getattr(e, "recoverable", True):
                    await self._dead_letter(raw, str(e), attempts=attempt)
                    return "dead_lettered"
                last_error = str(e)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                await self._mark_processed(event.id)
                return outcome

            if attempt < self.max_attempts:
                delay = self.backoff_base_s * (2 ** (attempt - 1))
                logger.warning(
                    "Webhook processing failed, retrying",
                    event_id=event.id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=last_error,
                )
                await asyncio.sleep(delay)

        await self._dead_letter(raw, last_error, attempts=self.max_attempts)
        return "dead_lettered"

    async def _mark_processed(self, event_id: str) -> None:
        await self.queue.set_with_ttl(processed_key(event_id), "1", settings.WEBHOOK_DEDUP_TTL_SECONDS)

    async def _dead_letter(self, raw: str, error: str, *, attempts: int) -> None:
        logger.error("Webhook moved to dead-letter list", attempts=attempts, error=error)
        entry = json.dumps({"envelope": raw, "error": error, "attempts": attempts, "failed_at": time.time()})
        await self.queue.push(settings.WEBHOOK_DEAD_LETTER_KEY, entry)

    async def consume_once(self, timeout_s: int = POP_TIMEOUT_SECONDS) -> str | None:
        raw = await self.queue.claim(
            settings.WEBHOOK_QUEUE_KEY, settings.WEBHOOK_PROCESSING_KEY, timeout_s=timeout_s
        )
        if raw is None:
            return None
        outcome = await self.handle(raw)
        await self.queue.ack(settings.WEBHOOK_PROCESSING_KEY, raw)
        return outcome

    async def recover(self) -> int:
        """Put envelopes left in the processing list by a dead worker back on the queue."""
        moved = await self.queue.requeue(settings.WEBHOOK_PROCESSING_KEY, settings.WEBHOOK_QUEUE_KEY)
        if moved:
            logger.warning("Requeued unfinished webhook events", count=moved)
        return moved


async def start_webhook_consumer():
    """Consume the webhook queue until the process is stopped."""
    consumer = WebhookConsumer()
    await consumer.recover()
    logger.info("Starting webhook consumer", queue=settings.WEBHOOK_QUEUE_KEY)

    while True:
        try:
            await consumer.consume_once()
        except Exception as e:
            logger.error("Error in webhook consumer loop", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(5)
