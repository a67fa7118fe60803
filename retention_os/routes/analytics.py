"""
Analytics API Routes
Dashboard reads over the decision log and the performance tables.
"""

from fastapi import APIRouter, Depends, Query

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.middleware import GatekeeperContext, gatekeeper_context
from retention_os.models.api.analytics_response import (
    ChurnReasonsResponse,
    OfferPerformanceResponse,
    RebuildResponse,
    RoiTrendResponse,
    TimeSeriesResponse,
    UpcomingRenewalsResponse,
)
from retention_os.models.domain.analytics_domain import (
    RenewalStats,
    RevenueForecast,
    RoiMetrics,
    SummaryMetrics,
)
from retention_os.services.analytics_service import AnalyticsService
from retention_os.services.renewal_service import RenewalService

logger = get_logger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


def get_renewal_service() -> RenewalService:
    return RenewalService()


@router.get("/summary", response_model=SummaryMetrics)
async def get_summary(analytics: AnalyticsService = Depends(get_analytics_service)):
    """Saved users, revenue saved and overall acceptance rate."""
    return await analytics.get_summary_metrics()


# Range checks live in the service so out-of-range days map to invalid_input
@router.get("/revenue", response_model=TimeSeriesResponse)
async def get_revenue(
    days: int = Query(default=30, description="Days to include (1-365)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    points = await analytics.get_saved_revenue_over_time(days)
    return TimeSeriesResponse(
        days=days, total=round(sum(p.value for p in points), 2), points=points
    )


@router.get("/users", response_model=TimeSeriesResponse)
async def get_saved_users(
    days: int = Query(default=30, description="Days to include (1-365)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    points = await analytics.get_saved_users_over_time(days)
    return TimeSeriesResponse(days=days, total=sum(p.value for p in points), points=points)


@router.get("/offers", response_model=OfferPerformanceResponse)
async def get_offers(analytics: AnalyticsService = Depends(get_analytics_service)):
    return OfferPerformanceResponse(offers=await analytics.get_offer_performance())


@router.get("/churn-reasons", response_model=ChurnReasonsResponse)
async def get_churn_reasons(analytics: AnalyticsService = Depends(get_analytics_service)):
    reasons = await analytics.get_churn_reasons()
    return ChurnReasonsResponse(total=sum(r.count for r in reasons), reasons=reasons)


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_performance(
    context: GatekeeperContext = Depends(gatekeeper_context),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    """Recompute offer/message performance from the event log."""
    result = await analytics.rebuild_offer_performance(actor=context.actor)
    logger.info("Performance rebuild requested", actor=context.actor, **result)
    return RebuildResponse(success=True, **result)


@router.get("/roi", response_model=RoiMetrics)
async def get_roi(
    monthly_cost: float | None = Query(default=None, description="Defaults to ROI_MONTHLY_COST"),
    days: int = Query(default=30, description="Trailing window (1-365)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    return await analytics.calculate_roi(monthly_cost, days)


@router.get("/roi/trend", response_model=RoiTrendResponse)
async def get_roi_trend(
    monthly_cost: float | None = Query(default=None),
    days: int = Query(default=30, description="Days to include (1-365)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    points = await analytics.roi_trend(monthly_cost, days)
    return RoiTrendResponse(
        monthly_cost=settings.ROI_MONTHLY_COST if monthly_cost is None else monthly_cost,
        days=days,
        points=points,
    )


@router.get("/roi/forecast", response_model=RevenueForecast)
async def get_revenue_forecast(
    monthly_cost: float | None = Query(default=None),
    days: int = Query(default=90, description="Days to project (1-365)"),
    analytics: AnalyticsService = Depends(get_analytics_service),
):
    """Straight-line projection of the last 30 days of saves."""
    return await analytics.revenue_forecast(monthly_cost, days)


@router.get("/renewals", response_model=UpcomingRenewalsResponse)
async def get_upcoming_renewals(
    days: int = Query(default=30, description="Renewal window (1-365)"),
    renewals: RenewalService = Depends(get_renewal_service),
):
    upcoming = await renewals.upcoming_renewals(days)
    return UpcomingRenewalsResponse(
        days=days,
        total=len(upcoming),
        value_renewing=round(sum(r.value or 0 for r in upcoming), 2),
        renewals=upcoming,
    )


@router.get("/renewals/stats", response_model=RenewalStats)
async def get_renewal_stats(renewals: RenewalService = Depends(get_renewal_service)):
    return await renewals.subscription_stats()
