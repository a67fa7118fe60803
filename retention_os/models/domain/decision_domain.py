"""
Result types of the decision processor.
"""

from pydantic import BaseModel, Field

from retention_os.models.domain.retention_domain import (
    AttemptState,
    EventStatus,
    FlowStep,
    OfferType,
)


class StartRetentionResult(BaseModel):
    flow_id: int | None = None
    steps: list[FlowStep] = Field(default_factory=list)
    language: str = "en"
    segment: str | None = None
    attempt_id: int | None = None
    user_id: int | None = None
    proceed_with_cancellation: bool = False
    reason: str | None = None

    @classmethod
    def no_flow(cls, reason: str, *, language: str = "en", segment: str | None = None, user_id: int | None = None):
        """Result telling the widget to let the cancellation go through."""
        return cls(
            language=language,
            segment=segment,
            user_id=user_id,
            proceed_with_cancellation=True,
            reason=reason,
        )


class DecisionResult(BaseModel):
    success: bool
    message: str
    offer_type: OfferType
    status: EventStatus
    revenue_saved: float = 0.0
    subscription_updated: bool = False
    event_id: int | None = None
    decision_id: str
    attempt_id: int | None = None
    attempt_state: AttemptState | None = None
    duplicate: bool = False
