"""
Dashboard read models.
"""

from datetime import date, datetime

from pydantic import BaseModel

from retention_os.models.domain.retention_domain import OfferType


class SummaryMetrics(BaseModel):
    saved_users: int = 0
    revenue_saved: float = 0.0
    offers_shown: int = 0
    offers_accepted: int = 0
    acceptance_rate: float = 0.0
    avg_revenue_per_user: float = 0.0


class TimeSeriesPoint(BaseModel):
    day: date
    value: float


class OfferTypePerformance(BaseModel):
    offer_type: OfferType
    shown_count: int = 0
    accepted_count: int = 0
    acceptance_rate: float = 0.0
    revenue_total: float = 0.0
    avg_revenue_saved: float = 0.0


class ChurnReasonShare(BaseModel):
    reason_code: str
    count: int
    percentage: float


class PerformanceDivergence(BaseModel):
    offer_type: OfferType
    segment: str
    expected_shown: int
    actual_shown: int
    expected_accepted: int
    actual_accepted: int
    expected_revenue: float
    actual_revenue: float


class ReconcileReport(BaseModel):
    events_scanned: int
    pairs_checked: int
    divergences: list[PerformanceDivergence]
    repaired: bool = False

    @property
    def consistent(self) -> bool:
        return not self.divergences


class RoiMetrics(BaseModel):
    """Return on the engine's monthly cost over a trailing window."""

    days: int
    start_date: date
    end_date: date
    monthly_cost: float
    period_cost: float
    revenue_saved: float
    saved_users: int
    monthly_revenue_saved: float
    annual_revenue_saved: float
    monthly_roi: float
    annual_roi: float
    roi_multiplier: float
    cost_per_saved_user: float
    avg_revenue_per_saved_user: float
    break_even_days: int | None = None
    break_even_date: date | None = None


class RoiTrendPoint(BaseModel):
    day: date
    revenue_saved: float
    cost: float
    roi: float
    cumulative_roi: float


class ForecastPoint(BaseModel):
    day: date
    projected_revenue: float
    cumulative_revenue: float
    projected_roi: float


class RevenueForecast(BaseModel):
    monthly_revenue_saved: float
    confidence: float
    points: list[ForecastPoint]


class UpcomingRenewal(BaseModel):
    subscription_id: int
    user_id: int
    external_id: str | None = None
    email: str | None = None
    plan: str | None = None
    value: float | None = None
    current_period_end: datetime
    days_until_renewal: int
    cancel_attempts: int = 0


class RenewalStats(BaseModel):
    total_active: int = 0
    renewing_in_7_days: int = 0
    renewing_in_30_days: int = 0
    renewing_in_90_days: int = 0
    value_at_risk: float = 0.0
    avg_days_until_renewal: int = 0
