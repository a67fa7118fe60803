# retention_os/models/api/retention_response.py
"""
Retention API response models.
Used by routes for output formatting.
"""

from pydantic import BaseModel, Field

from retention_os.models.domain.decision_domain import DecisionResult, StartRetentionResult
from retention_os.models.domain.retention_domain import Flow, FlowStep


class StartRetentionResponse(BaseModel):
    """Response for POST /retention/start"""

    flow_id: int | None = Field(None, description="Selected flow, None when no flow applies")
    steps: list[FlowStep] = Field(default_factory=list)
    language: str
    segment: str | None = None
    attempt_id: int | None = Field(None, description="Pass back with each decision")
    user_id: int | None = Field(None, description="Engine user id")
    proceed_with_cancellation: bool = Field(
        default=False, description="True when the widget should let the cancel go through"
    )
    reason: str | None = None

    @classmethod
    def from_result(cls, result: StartRetentionResult) -> "StartRetentionResponse":
        return cls(**result.model_dump())


class DecisionResponse(BaseModel):
    """Response for POST /retention/decision"""

    success: bool
    message: str
    offer_type: str
    status: str = Field(..., description="declined, confirmed or pending_confirmation")
    revenue_saved: float = Field(default=0.0, description="0 unless the mutation is confirmed")
    subscription_updated: bool = False
    event_id: int | None = None
    decision_id: str
    attempt_id: int | None = None
    attempt_state: str | None = None
    duplicate: bool = Field(default=False, description="Retry of an already recorded decision")

    @classmethod
    def from_result(cls, result: DecisionResult) -> "DecisionResponse":
        return cls(**result.model_dump(mode="json"))


class FlowResponse(BaseModel):
    """A stored retention flow."""

    flow: Flow
    active: bool


class FlowListResponse(BaseModel):
    total: int
    flows: list[FlowResponse]
