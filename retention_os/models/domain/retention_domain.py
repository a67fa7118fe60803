"""
Domain models for the retention engine.

Rows coming out of PostgreSQL are validated into these models by the
repositories; services and routes only ever see typed records.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from retention_os.errors import InvalidInput


class OfferType(str, Enum):
    """Offer types in enumeration order (used as the final tie-break)."""

    PAUSE = "pause"
    DOWNGRADE = "downgrade"
    DISCOUNT = "discount"
    SUPPORT = "support"
    FEEDBACK = "feedback"


OFFER_TYPE_ORDER: tuple[OfferType, ...] = tuple(OfferType)

# Used when a segment has no performance data yet
DEFAULT_OFFER_ORDER: tuple[OfferType, ...] = (
    OfferType.PAUSE,
    OfferType.DISCOUNT,
    OfferType.DOWNGRADE,
    OfferType.SUPPORT,
    OfferType.FEEDBACK,
)

# Offer types whose acceptance mutates the subscription through billing
BILLING_OFFER_TYPES = frozenset({OfferType.PAUSE, OfferType.DOWNGRADE, OfferType.DISCOUNT})

# Offer types whose acceptance keeps the customer paying. An accepted feedback
# step records a reason and the user still cancels.
SAVE_OFFER_TYPES = frozenset(set(OfferType) - {OfferType.FEEDBACK})


def parse_offer_type(value: Any) -> OfferType:
    """Validate an offer type at a boundary."""
    if isinstance(value, OfferType):
        return value
    try:
        return OfferType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in OfferType)
        raise InvalidInput(
            f"Invalid offer type '{value}'. Must be one of: {allowed}", offer_type=value
        ) from None


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    PENDING_CONFIRMATION = "pending_confirmation"


class AttemptState(str, Enum):
    STARTED = "started"
    OFFER_SHOWN = "offer_shown"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    PENDING_CONFIRMATION = "pending_confirmation"
    CLOSED = "closed"


ATTEMPT_TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.STARTED: frozenset({AttemptState.OFFER_SHOWN}),
    AttemptState.OFFER_SHOWN: frozenset(
        {AttemptState.ACCEPTED, AttemptState.DECLINED, AttemptState.PENDING_CONFIRMATION}
    ),
    AttemptState.DECLINED: frozenset({AttemptState.OFFER_SHOWN, AttemptState.CLOSED}),
    AttemptState.ACCEPTED: frozenset({AttemptState.CLOSED}),
    AttemptState.PENDING_CONFIRMATION: frozenset({AttemptState.ACCEPTED, AttemptState.CLOSED}),
    AttemptState.CLOSED: frozenset(),
}

OPEN_ATTEMPT_STATES = frozenset(
    {AttemptState.STARTED, AttemptState.OFFER_SHOWN, AttemptState.DECLINED}
)


def can_transition(current: AttemptState, target: AttemptState) -> bool:
    return target in ATTEMPT_TRANSITIONS[current]


# =================================================================
# FLOW STEPS - tagged union over the five offer types
# =================================================================


class PauseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_months: int = Field(default=1, ge=1, le=12)


class DowngradeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_plan: str = Field(..., min_length=1, max_length=100)


class DiscountConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    percent: int = Field(default=20, ge=1, le=100)
    duration_months: int = Field(default=3, ge=1, le=24)


class SupportConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: Literal["email", "chat", "call"] = "email"
    contact_url: str | None = None


class FeedbackConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason_codes: list[str] = Field(default_factory=list)


class _StepBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    message: str = Field(..., min_length=1, max_length=500)


class PauseStep(_StepBase):
    type: Literal["pause"] = "pause"
    config: PauseConfig = Field(default_factory=PauseConfig)


class DowngradeStep(_StepBase):
    type: Literal["downgrade"] = "downgrade"
    config: DowngradeConfig


class DiscountStep(_StepBase):
    type: Literal["discount"] = "discount"
    config: DiscountConfig = Field(default_factory=DiscountConfig)


class SupportStep(_StepBase):
    type: Literal["support"] = "support"
    config: SupportConfig = Field(default_factory=SupportConfig)


class FeedbackStep(_StepBase):
    type: Literal["feedback"] = "feedback"
    config: FeedbackConfig = Field(default_factory=FeedbackConfig)


FlowStep = Annotated[
    PauseStep | DowngradeStep | DiscountStep | SupportStep | FeedbackStep,
    Field(discriminator="type"),
]

flow_steps_adapter = TypeAdapter(list[FlowStep])


class FlowDefinition(BaseModel):
    """Operator-supplied flow, validated before it is stored."""

    name: str = Field(..., min_length=1, max_length=255)
    steps: list[FlowStep] = Field(..., min_length=1)
    language: str = Field(default="en", min_length=2, max_length=10)
    ranking_score: float = 0
    target_plans: list[str] = Field(default_factory=list)
    target_regions: list[str] = Field(default_factory=list)
    target_value_buckets: list[Literal["trial", "low", "mid", "high"]] = Field(
        default_factory=list
    )

    @field_validator("target_plans", "target_regions")
    @classmethod
    def _normalize_targets(cls, values: list[str]) -> list[str]:
        return sorted({v.strip().lower() for v in values if v and v.strip()})


class Flow(FlowDefinition):
    id: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.ranking_score > 0

    def offer_types(self) -> list[OfferType]:
        """Distinct offer types in step order."""
        seen: list[OfferType] = []
        for step in self.steps:
            offer_type = OfferType(step.type)
            if offer_type not in seen:
                seen.append(offer_type)
        return seen

    def step_for(self, offer_type: OfferType):
        for step in self.steps:
            if step.type == offer_type.value:
                return step
        return None

    def is_final_step(self, offer_type: OfferType) -> bool:
        return bool(self.steps) and self.steps[-1].type == offer_type.value


# =================================================================
# RECORDS
# =================================================================


class UserRecord(BaseModel):
    id: int
    external_id: str
    email: str | None = None
    plan: str | None = None
    region: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionRecord(BaseModel):
    id: int
    user_id: int
    billing_ref: str | None = None
    value: float | None = None
    status: str = "active"
    cancel_attempts: int = 0
    status_changed_at: datetime | None = None
    current_period_end: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RetentionAttempt(BaseModel):
    id: int
    user_id: int
    subscription_id: int
    flow_id: int
    segment: str
    state: AttemptState
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NewOfferEvent(BaseModel):
    """Offer event before insert; decision_id is the idempotency key."""

    decision_id: str
    user_id: int | None
    flow_id: int | None
    attempt_id: int | None = None
    offer_type: OfferType
    segment: str
    message_template: str
    accepted: bool
    status: EventStatus
    revenue_saved: float = 0.0
    confirms_event_id: int | None = None


class OfferEvent(NewOfferEvent):
    id: int
    created_at: datetime

    @property
    def is_decision(self) -> bool:
        """False for confirmation events appended after a pending decision."""
        return self.confirms_event_id is None

    @property
    def is_confirmed_acceptance(self) -> bool:
        return self.accepted and self.status == EventStatus.CONFIRMED

    @property
    def is_save(self) -> bool:
        """A confirmed acceptance that retained revenue."""
        return self.is_confirmed_acceptance and self.offer_type in SAVE_OFFER_TYPES


class ChurnReason(BaseModel):
    id: int
    user_id: int | None
    flow_id: int | None = None
    reason_code: str | None = None
    reason_text: str | None = None
    created_at: datetime


class _PerformanceCounters(BaseModel):
    shown_count: int = 0
    accepted_count: int = 0
    revenue_total: float = 0.0

    @property
    def acceptance_rate(self) -> float:
        """Percentage, derived from the counters."""
        if self.shown_count <= 0:
            return 0.0
        return self.accepted_count / self.shown_count * 100

    @property
    def avg_revenue_saved(self) -> float:
        if self.accepted_count <= 0:
            return 0.0
        return self.revenue_total / self.accepted_count


class OfferPerformance(_PerformanceCounters):
    offer_type: OfferType
    segment: str


class MessagePerformance(_PerformanceCounters):
    message_template: str
    offer_type: OfferType


class Weight(BaseModel):
    name: str
    value: float
    description: str | None = None
    updated_at: datetime | None = None


class PendingBillingMutation(BaseModel):
    id: int
    offer_event_id: int
    subscription_id: int
    offer_type: OfferType
    params: dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "confirmed", "failed"] = "pending"
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
