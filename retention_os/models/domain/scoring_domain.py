"""
Result types of the scoring engine.
"""

from pydantic import BaseModel, Field

from retention_os.models.domain.retention_domain import OfferType


class RiskFactors(BaseModel):
    """Normalized factor values, each in [0, 100]."""

    behavior: float
    value: float
    history: float


class ChurnRiskResult(BaseModel):
    user_id: int
    score: int = Field(..., ge=0, le=100)
    segment: str
    factors: RiskFactors
    weights: dict[str, float]
    neutral: bool = False
    explanation: str


class OfferRecommendation(BaseModel):
    user_id: int
    flow_id: int | None = None
    segment: str
    offer_type: OfferType
    acceptance_rate: float | None = None
    sample_size: int = 0
    fallback: bool = False
    reason: str


class MessageSuggestion(BaseModel):
    user_id: int
    offer_type: OfferType
    template_id: str
    message: str = Field(..., max_length=200)
    acceptance_rate: float | None = None
    from_performance: bool = False


class PerformanceDelta(BaseModel):
    shown: int = 0
    accepted: int = 0
    revenue: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.shown == 0 and self.accepted == 0 and self.revenue == 0
