"""
Billing confirmation job.

Retries billing mutations that failed or timed out on the decision path.
Each due row is locked (FOR UPDATE SKIP LOCKED) for the duration of its
provider call, so concurrent workers never call billing twice for the same
decision. The provider call reuses the original decision id as its
idempotency key. A mutation that runs out of attempts closes its retention
attempt without a save.
"""

import asyncio

from retention_os.config import settings
from retention_os.db.pool import db_pool
from retention_os.errors import BillingMutationFailed
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import OfferEvent
from retention_os.repositories.event_repository import EventRepository
from retention_os.repositories.pending_mutation_repository import PendingMutationRepository
from retention_os.repositories.subscription_repository import SubscriptionRepository
from retention_os.services.decision_processor import DecisionProcessor

logger = get_logger(__name__)

BATCH_SIZE = 50


class BillingConfirmationJob:
    def __init__(
        self,
        processor: DecisionProcessor | None = None,
        *,
        pending=PendingMutationRepository,
        events=EventRepository,
        subscriptions=SubscriptionRepository,
        transaction=None,
        max_attempts: int | None = None,
        backoff_base_s: float | None = None,
    ):
        self.processor = processor or DecisionProcessor()
        self.pending = pending
        self.events = events
        self.subscriptions = subscriptions
        self.transaction = transaction or db_pool.transaction
        self.max_attempts = max_attempts or settings.BILLING_RETRY_MAX_ATTEMPTS
        self.backoff_base_s = (
            settings.BILLING_RETRY_BACKOFF_BASE_SECONDS if backoff_base_s is None else backoff_base_s
        )

    async def run_once(self, batch_size: int = BATCH_SIZE) -> dict:
        metrics = {"processed": 0, "confirmed": 0, "retry_scheduled": 0, "failed": 0}

        for _ in range(batch_size):
            outcome = await self._process_next()
            if outcome is None:
                break
            metrics["processed"] += 1
            metrics[outcome] += 1

        if metrics["processed"]:
            logger.info("Billing confirmation run completed", **metrics)
        return metrics

    async def _process_next(self) -> str | None:
        async with self.transaction() as conn:
            outcome, confirmation = await self._settle_next(conn)
        if confirmation is not None:
            await self.processor.scoring.nudge_weights(confirmation)
        return outcome

    async def _settle_next(self, conn) -> tuple[str | None, OfferEvent | None]:
        claimed = await self.pending.claim_due(1, connection=conn)
        if not claimed:
            return None, None
        mutation = claimed[0]

        original = await self.events.get_offer_event(mutation.offer_event_id, connection=conn)
        subscription = await self.subscriptions.get_by_id(
            mutation.subscription_id, connection=conn
        )
        if original is None or subscription is None:
            await self.pending.record_failure(
                mutation.id,
                error="pending event or subscription missing",
                max_attempts=1,
                backoff_base_seconds=self.backoff_base_s,
                connection=conn,
            )
            await self.processor.close_abandoned_attempt(original, connection=conn)
            return "failed", None

        try:
            await self.processor.apply_billing_mutation(
                subscription, mutation.offer_type, mutation.params, original.decision_id
            )
        except (BillingMutationFailed, TimeoutError) as e:
            error = getattr(e, "message", None) or "billing call timed out"
            updated = await self.pending.record_failure(
                mutation.id,
                error=error,
                max_attempts=self.max_attempts,
                backoff_base_seconds=self.backoff_base_s,
                connection=conn,
            )
            if updated is not None and updated.status == "failed":
                await self.processor.close_abandoned_attempt(original, connection=conn)
                logger.error(
                    "Billing mutation gave up after retries",
                    mutation_id=mutation.id,
                    offer_event_id=mutation.offer_event_id,
                    attempts=updated.attempts,
                    error=error,
                )
                return "failed", None
            logger.warning(
                "Billing mutation retry scheduled",
                mutation_id=mutation.id,
                attempts=updated.attempts if updated else None,
                error=error,
            )
            return "retry_scheduled", None

        confirmation = await self.processor.confirm_pending_mutation(
            mutation, source="billing_retry", connection=conn
        )
        return "confirmed", confirmation


async def start_billing_confirmation_scheduler():
    job = BillingConfirmationJob()
    logger.info(
        "Starting billing confirmation scheduler",
        interval_seconds=settings.BILLING_RETRY_INTERVAL_SECONDS,
    )

    while True:
        try:
            await job.run_once()
            await asyncio.sleep(settings.BILLING_RETRY_INTERVAL_SECONDS)
        except Exception as e:
            logger.error(
                "Error in billing confirmation scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
