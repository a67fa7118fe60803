"""
Billing webhook handling.

The HTTP route only verifies and enqueues; the consumer job calls
process_event. Processing is idempotent by event id (claimed inside the
same transaction as the changes) and never regresses a subscription to an
older provider state.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

from pydantic import ValidationError

from retention_os.config import settings
from retention_os.db.pool import db_pool
from retention_os.errors import DuplicateEvent, InvalidInput, InvalidSignature
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.billing_domain import (
    INVOICE_PAID,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    TRIAL_WILL_END,
    BillingWebhookEvent,
)
from retention_os.models.domain.retention_domain import (
    OfferEvent,
    OfferType,
    PendingBillingMutation,
)
from retention_os.repositories.pending_mutation_repository import PendingMutationRepository
from retention_os.repositories.subscription_repository import SubscriptionRepository
from retention_os.repositories.webhook_repository import WebhookRepository
from retention_os.services.decision_processor import DecisionProcessor
from retention_os.services.redis_client import fast_redis

logger = get_logger(__name__)

SIGNATURE_HEADER = "billing-signature"
PROCESSED_KEY_PREFIX = "billing:webhook:processed"


def processed_key(event_id: str) -> str:
    return f"{PROCESSED_KEY_PREFIX}:{event_id}"


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance_s: int | None = None,
    now: float | None = None,
) -> None:
    """
    Verify a `t=<ts>,v1=<hex>` signature header.

    Raises:
        InvalidSignature: Missing/malformed header, bad signature, or a
            timestamp outside the tolerance window
    """
    if not secret:
        raise InvalidSignature("Webhook secret not configured")
    if not header:
        raise InvalidSignature("Missing signature")

    timestamp = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignature("Malformed signature timestamp") from None
        elif key == "v1" and value:
            candidates.append(value)

    if timestamp is None or not candidates:
        raise InvalidSignature("Malformed signature header")

    tolerance = settings.WEBHOOK_TOLERANCE_SECONDS if tolerance_s is None else tolerance_s
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        raise InvalidSignature("Signature timestamp outside tolerance window")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise InvalidSignature("Invalid signature")


def parse_event(payload: bytes) -> BillingWebhookEvent:
    try:
        return BillingWebhookEvent.model_validate_json(payload)
    except ValidationError:
        raise InvalidInput("Malformed webhook payload") from None


def mutation_matches(mutation: PendingBillingMutation, obj: dict) -> bool:
    """Does a provider subscription object show this pending change as applied?"""
    if mutation.offer_type == OfferType.PAUSE:
        return bool(obj.get("pause_collection")) or obj.get("status") == "paused"
    if mutation.offer_type == OfferType.DISCOUNT:
        return bool(obj.get("discount"))
    if mutation.offer_type == OfferType.DOWNGRADE:
        target = mutation.params.get("plan")
        plan_ids = {(obj.get("plan") or {}).get("id")}
        for item in (obj.get("items") or {}).get("data", []):
            plan_ids.add((item.get("price") or {}).get("id"))
            plan_ids.add((item.get("plan") or {}).get("id"))
        return target is not None and target in plan_ids
    return False


def _provider_status(event: BillingWebhookEvent) -> str | None:
    obj = event.data.object
    if event.type in (SUBSCRIPTION_DELETED, SUBSCRIPTION_CANCELED):
        return "canceled"
    if event.type == SUBSCRIPTION_UPDATED:
        if obj.get("pause_collection"):
            return "paused"
        return obj.get("status")
    if event.type == INVOICE_PAID:
        return "active"
    return None


def _provider_value(obj: dict) -> float | None:
    amount = (obj.get("plan") or {}).get("amount")
    return amount / 100 if isinstance(amount, int) else None


def _period_end(event: BillingWebhookEvent):
    obj = event.data.object
    ts = obj.get("period_end") if event.type == INVOICE_PAID else obj.get("current_period_end")
    if not isinstance(ts, int):
        return None
    return datetime.fromtimestamp(ts, UTC)


class WebhookService:
    def __init__(
        self,
        *,
        webhooks=WebhookRepository,
        subscriptions=SubscriptionRepository,
        pending=PendingMutationRepository,
        decisions: DecisionProcessor | None = None,
        queue=fast_redis,
        transaction=None,
    ):
        self.webhooks = webhooks
        self.subscriptions = subscriptions
        self.pending = pending
        self.decisions = decisions or DecisionProcessor()
        self.queue = queue
        self.transaction = transaction or db_pool.transaction

    async def enqueue(self, event: BillingWebhookEvent) -> bool:
        """
        Hand a verified event to the consumer queue.

        Only events the consumer has finished with are skipped; a redelivery
        of an event still queued, in flight or dead-lettered is queued again
        and resolved by the processed-event claim.

        Returns:
            False if the event id was already processed
        """
        if await self.queue.get(processed_key(event.id)):
            logger.info("Webhook redelivery ignored", event_id=event.id, event_type=event.type)
            return False

        envelope = json.dumps({"event": event.model_dump(mode="json"), "received_at": time.time()})
        await self.queue.push(settings.WEBHOOK_QUEUE_KEY, envelope)
        logger.info("Webhook enqueued", event_id=event.id, event_type=event.type)
        return True

    async def process_event(self, event: BillingWebhookEvent) -> str:
        """
        Apply one webhook event.

        Returns:
            Outcome label: "applied", "stale", "noted", "unknown_subscription" or "ignored"

        Raises:
            DuplicateEvent: The event id was processed before
        """
        confirmations: list[OfferEvent] = []
        async with self.transaction() as conn:
            outcome = await self._apply(event, conn, confirmations)
        for confirmation in confirmations:
            await self.decisions.scoring.nudge_weights(confirmation)
        return outcome

    async def _apply(
        self, event: BillingWebhookEvent, conn, confirmations: list[OfferEvent]
    ) -> str:
        if not await self.webhooks.claim_event(event.id, event.type, connection=conn):
            raise DuplicateEvent(f"Webhook {event.id} already processed", event_id=event.id)

        ref = event.subscription_ref
        subscription = (
            await self.subscriptions.get_by_billing_ref(ref, connection=conn) if ref else None
        )
        if subscription is None:
            logger.info(
                "Webhook for unknown subscription", event_id=event.id, billing_ref=ref
            )
            return "unknown_subscription"

        if event.type == TRIAL_WILL_END:
            logger.info(
                "Trial ending soon", subscription_id=subscription.id, event_id=event.id
            )
            return "noted"

        status = _provider_status(event)
        if status is None:
            logger.info("Webhook type not handled", event_id=event.id, event_type=event.type)
            return "ignored"

        applied = await self.subscriptions.apply_provider_status(
            subscription.id,
            status=status,
            occurred_at=event.occurred_at,
            value=_provider_value(event.data.object),
            current_period_end=_period_end(event),
            connection=conn,
        )

        if event.type == SUBSCRIPTION_UPDATED:
            for mutation in await self.pending.list_pending_for_subscription(
                subscription.id, connection=conn
            ):
                if mutation_matches(mutation, event.data.object):
                    confirmation = await self.decisions.confirm_pending_mutation(
                        mutation, source="webhook", connection=conn
                    )
                    if confirmation is not None:
                        confirmations.append(confirmation)

        logger.info(
            "Webhook processed",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
            status=status,
            applied=applied,
        )
        return "applied" if applied else "stale"
