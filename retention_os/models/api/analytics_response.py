# retention_os/models/api/analytics_response.py
"""
Analytics API response models.
Used by the dashboard endpoints.
"""

from pydantic import BaseModel, Field

from retention_os.models.domain.analytics_domain import (
    ChurnReasonShare,
    OfferTypePerformance,
    RoiTrendPoint,
    TimeSeriesPoint,
    UpcomingRenewal,
)


class TimeSeriesResponse(BaseModel):
    """Daily series; days without data are reported as 0."""

    days: int = Field(..., ge=1, le=365)
    total: float
    points: list[TimeSeriesPoint]


class OfferPerformanceResponse(BaseModel):
    offers: list[OfferTypePerformance]


class ChurnReasonsResponse(BaseModel):
    total: int
    reasons: list[ChurnReasonShare]


class RebuildResponse(BaseModel):
    """Response for POST /analytics/rebuild"""

    success: bool
    offer_rows: int
    message_rows: int


class RoiTrendResponse(BaseModel):
    monthly_cost: float
    days: int
    points: list[RoiTrendPoint]


class UpcomingRenewalsResponse(BaseModel):
    days: int
    total: int
    value_renewing: float = Field(..., description="Sum of subscription values in the window")
    renewals: list[UpcomingRenewal]
