"""
Inbound billing webhook events (Stripe-compatible shape).
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
SUBSCRIPTION_CANCELED = "customer.subscription.canceled"
INVOICE_PAID = "invoice.paid"
TRIAL_WILL_END = "customer.subscription.trial_will_end"

HANDLED_EVENT_TYPES = frozenset(
    {SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED, SUBSCRIPTION_CANCELED, INVOICE_PAID, TRIAL_WILL_END}
)


class WebhookEventData(BaseModel):
    object: dict[str, Any] = Field(default_factory=dict)


class BillingWebhookEvent(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    created: int
    data: WebhookEventData = Field(default_factory=WebhookEventData)

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, UTC)

    @property
    def subscription_ref(self) -> str | None:
        """Billing reference of the subscription the event is about."""
        obj = self.data.object
        if self.type == INVOICE_PAID:
            return obj.get("subscription")
        return obj.get("id")
