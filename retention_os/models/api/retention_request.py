# retention_os/models/api/retention_request.py
"""
Retention API request models.
Used by routes for input validation.
"""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class StartRetentionRequest(BaseModel):
    """Request sent by the widget when a user clicks cancel."""

    user_id: str = Field(..., min_length=1, max_length=255, description="Product's user id")
    plan: str | None = Field(default=None, max_length=100, description="Current plan")
    region: str | None = Field(default=None, max_length=100, description="User region")
    email: str | None = Field(default=None, max_length=320)
    billing_ref: str | None = Field(
        default=None, max_length=255, description="Billing provider subscription id"
    )
    value: float | None = Field(default=None, description="Monthly subscription value")
    language: str = Field(default="en", min_length=2, max_length=10)


class DecisionRequest(BaseModel):
    """The user's answer to one offer step."""

    flow_id: int = Field(..., description="Flow the step belongs to")
    # Validated by the processor so unknown types map to invalid_input
    offer_type: str = Field(..., description="pause, downgrade, discount, support or feedback")
    accepted: bool
    user_id: int | None = Field(default=None, description="Engine user id from /retention/start")
    attempt_id: int | None = Field(default=None, description="Attempt id from /retention/start")
    revenue_value: float | None = Field(default=None, description="Defaults to the subscription value")
    reason_code: str | None = Field(default=None, max_length=100)
    reason_text: str | None = Field(default=None, max_length=2000)
    message_template: str | None = Field(default=None, max_length=100)
    decision_id: UUID | None = Field(
        default=None, description="Client idempotency key for retries, a UUID"
    )


class FlowRequest(BaseModel):
    """Create or replace a retention flow."""

    name: str = Field(..., min_length=1, max_length=255)
    steps: list[dict[str, Any]] = Field(..., description="Validated against the step types on save")
    language: str = Field(default="en", min_length=2, max_length=10)
    ranking_score: float = Field(default=0, description="0 disables the flow")
    target_plans: list[str] = Field(default_factory=list)
    target_regions: list[str] = Field(default_factory=list)
    target_value_buckets: list[str] = Field(default_factory=list)
