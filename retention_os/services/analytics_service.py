"""
Analytics reader for the dashboard, plus rebuild and reconciliation of the
offer_performance accelerator.

Reads are cached in Redis for a short TTL. The cache fails open: a Redis
outage only costs a database query.
"""

import math
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta

from pydantic import TypeAdapter

from retention_os.config import settings
from retention_os.errors import InvalidInput
from retention_os.infrastructure.audit import audit_logger
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.analytics_domain import (
    ChurnReasonShare,
    ForecastPoint,
    OfferTypePerformance,
    PerformanceDivergence,
    ReconcileReport,
    RevenueForecast,
    RoiMetrics,
    RoiTrendPoint,
    SummaryMetrics,
    TimeSeriesPoint,
)
from retention_os.models.domain.retention_domain import OfferType
from retention_os.models.domain.scoring_domain import PerformanceDelta
from retention_os.repositories.analytics_repository import AnalyticsRepository
from retention_os.repositories.event_repository import EventRepository
from retention_os.repositories.performance_repository import PerformanceRepository
from retention_os.services.redis_client import fast_redis
from retention_os.services.scoring_service import accumulate_delta

logger = get_logger(__name__)

MIN_DAYS = 1
MAX_DAYS = 365
CACHE_PREFIX = "analytics"

_series_adapter = TypeAdapter(list[TimeSeriesPoint])
_offers_adapter = TypeAdapter(list[OfferTypePerformance])
_reasons_adapter = TypeAdapter(list[ChurnReasonShare])
_summary_adapter = TypeAdapter(SummaryMetrics)
_roi_adapter = TypeAdapter(RoiMetrics)

# Break-even further out than a year is reported as none
BREAK_EVEN_HORIZON_DAYS = 365


def validate_days(days: int) -> int:
    if not isinstance(days, int) or isinstance(days, bool) or not MIN_DAYS <= days <= MAX_DAYS:
        raise InvalidInput(f"days must be between {MIN_DAYS} and {MAX_DAYS}", days=days)
    return days


def validate_monthly_cost(monthly_cost: float) -> float:
    if not math.isfinite(monthly_cost) or monthly_cost < 0:
        raise InvalidInput("monthly_cost must be a non-negative number", monthly_cost=monthly_cost)
    return float(monthly_cost)


def roi_percent(revenue: float, cost: float) -> float:
    return round((revenue - cost) / cost * 100, 2) if cost > 0 else 0.0


def fill_daily_series(values: dict[date, float], days: int, today: date) -> list[TimeSeriesPoint]:
    """One point per day, oldest first, missing days as 0."""
    start = today - timedelta(days=days - 1)
    return [
        TimeSeriesPoint(day=start + timedelta(days=i), value=values.get(start + timedelta(days=i), 0))
        for i in range(days)
    ]


class AnalyticsService:
    def __init__(
        self,
        *,
        analytics=AnalyticsRepository,
        performance=PerformanceRepository,
        events=EventRepository,
        cache=fast_redis,
        cache_ttl_s: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.analytics = analytics
        self.performance = performance
        self.events = events
        self.cache = cache
        self.cache_ttl_s = settings.ANALYTICS_CACHE_TTL_SECONDS if cache_ttl_s is None else cache_ttl_s
        self.clock = clock or (lambda: datetime.now(UTC))

    async def _cached(self, key: str, adapter: TypeAdapter, loader: Callable[[], Awaitable]):
        cache_key = f"{CACHE_PREFIX}:{key}"
        if self.cache is not None and self.cache_ttl_s > 0:
            cached = await self.cache.get(cache_key)
            if cached:
                try:
                    return adapter.validate_json(cached)
                except ValueError:
                    logger.warning("Discarding unreadable analytics cache entry", key=cache_key)

        result = await loader()

        if self.cache is not None and self.cache_ttl_s > 0:
            await self.cache.set_with_ttl(
                cache_key, adapter.dump_json(result).decode(), ttl_s=self.cache_ttl_s
            )
        return result

    # -----------------------------------------------------------------
    # Dashboard reads
    # -----------------------------------------------------------------

    async def get_summary_metrics(self) -> SummaryMetrics:
        async def load() -> SummaryMetrics:
            totals = await self.analytics.summary_totals()
            saved_users = int(totals.get("saved_users") or 0)
            revenue = float(totals.get("revenue_saved") or 0)
            shown = int(totals.get("offers_shown") or 0)
            accepted = int(totals.get("offers_accepted") or 0)
            return SummaryMetrics(
                saved_users=saved_users,
                revenue_saved=round(revenue, 2),
                offers_shown=shown,
                offers_accepted=accepted,
                acceptance_rate=round(accepted / shown * 100, 2) if shown else 0.0,
                avg_revenue_per_user=round(revenue / saved_users, 2) if saved_users else 0.0,
            )

        return await self._cached("summary", _summary_adapter, load)

    async def get_saved_revenue_over_time(self, days: int = 30) -> list[TimeSeriesPoint]:
        days = validate_days(days)
        today = self.clock().date()

        async def load() -> list[TimeSeriesPoint]:
            since = today - timedelta(days=days - 1)
            values = await self.analytics.revenue_by_day(since)
            return fill_daily_series({d: round(v, 2) for d, v in values.items()}, days, today)

        return await self._cached(f"revenue:{days}:{today.isoformat()}", _series_adapter, load)

    async def get_saved_users_over_time(self, days: int = 30) -> list[TimeSeriesPoint]:
        days = validate_days(days)
        today = self.clock().date()

        async def load() -> list[TimeSeriesPoint]:
            since = today - timedelta(days=days - 1)
            values = await self.analytics.saved_users_by_day(since)
            return fill_daily_series(values, days, today)

        return await self._cached(f"users:{days}:{today.isoformat()}", _series_adapter, load)

    async def get_offer_performance(self) -> list[OfferTypePerformance]:
        async def load() -> list[OfferTypePerformance]:
            rows = {row["offer_type"]: row for row in await self.analytics.offer_performance_by_type()}
            result = []
            for offer_type in OfferType:
                row = rows.get(offer_type.value, {})
                shown = int(row.get("shown_count") or 0)
                accepted = int(row.get("accepted_count") or 0)
                revenue = float(row.get("revenue_total") or 0)
                result.append(
                    OfferTypePerformance(
                        offer_type=offer_type,
                        shown_count=shown,
                        accepted_count=accepted,
                        acceptance_rate=round(accepted / shown * 100, 2) if shown else 0.0,
                        revenue_total=round(revenue, 2),
                        avg_revenue_saved=round(revenue / accepted, 2) if accepted else 0.0,
                    )
                )
            return result

        return await self._cached("offers", _offers_adapter, load)

    async def get_churn_reasons(self) -> list[ChurnReasonShare]:
        async def load() -> list[ChurnReasonShare]:
            rows = await self.analytics.churn_reason_counts()
            total = sum(int(row["count"]) for row in rows)
            return [
                ChurnReasonShare(
                    reason_code=row["reason_code"],
                    count=int(row["count"]),
                    percentage=round(int(row["count"]) / total * 100, 2) if total else 0.0,
                )
                for row in rows
            ]

        return await self._cached("churn_reasons", _reasons_adapter, load)

    # -----------------------------------------------------------------
    # ROI
    # -----------------------------------------------------------------

    async def calculate_roi(self, monthly_cost: float | None = None, days: int = 30) -> RoiMetrics:
        """
        Revenue saved over the trailing window against the engine's cost.

        Monthly and annual figures extrapolate the window's daily average.
        """
        monthly_cost = validate_monthly_cost(
            settings.ROI_MONTHLY_COST if monthly_cost is None else monthly_cost
        )
        days = validate_days(days)
        today = self.clock().date()
        since = today - timedelta(days=days - 1)

        async def load() -> RoiMetrics:
            totals = await self.analytics.save_totals(since)
            revenue = float(totals.get("revenue_saved") or 0)
            saved_users = int(totals.get("saved_users") or 0)

            daily_revenue = revenue / days
            monthly_revenue = daily_revenue * 30
            annual_revenue = daily_revenue * 365
            period_cost = monthly_cost / 30 * days

            break_even_days = None
            break_even_date = None
            if daily_revenue > 0:
                break_even_days = math.ceil(monthly_cost / daily_revenue)
                if break_even_days < BREAK_EVEN_HORIZON_DAYS:
                    break_even_date = today + timedelta(days=break_even_days)

            return RoiMetrics(
                days=days,
                start_date=since,
                end_date=today,
                monthly_cost=monthly_cost,
                period_cost=round(period_cost, 2),
                revenue_saved=round(revenue, 2),
                saved_users=saved_users,
                monthly_revenue_saved=round(monthly_revenue, 2),
                annual_revenue_saved=round(annual_revenue, 2),
                monthly_roi=roi_percent(monthly_revenue, monthly_cost),
                annual_roi=roi_percent(annual_revenue, monthly_cost * 12),
                roi_multiplier=round(revenue / period_cost, 2) if period_cost > 0 else 0.0,
                cost_per_saved_user=round(period_cost / saved_users, 2) if saved_users else 0.0,
                avg_revenue_per_saved_user=round(revenue / saved_users, 2) if saved_users else 0.0,
                break_even_days=break_even_days,
                break_even_date=break_even_date,
            )

        key = f"roi:{monthly_cost:g}:{days}:{today.isoformat()}"
        return await self._cached(key, _roi_adapter, load)

    async def roi_trend(self, monthly_cost: float | None = None, days: int = 30) -> list[RoiTrendPoint]:
        """Daily ROI and running ROI over the window, oldest day first."""
        monthly_cost = validate_monthly_cost(
            settings.ROI_MONTHLY_COST if monthly_cost is None else monthly_cost
        )
        daily_cost = monthly_cost / 30
        points = []
        cumulative_revenue = cumulative_cost = 0.0
        for point in await self.get_saved_revenue_over_time(days):
            cumulative_revenue += point.value
            cumulative_cost += daily_cost
            points.append(
                RoiTrendPoint(
                    day=point.day,
                    revenue_saved=point.value,
                    cost=round(daily_cost, 2),
                    roi=roi_percent(point.value, daily_cost),
                    cumulative_roi=roi_percent(cumulative_revenue, cumulative_cost),
                )
            )
        return points

    async def revenue_forecast(
        self, monthly_cost: float | None = None, forecast_days: int = 90
    ) -> RevenueForecast:
        """
        Straight-line projection of the last 30 days.

        confidence is the share of those days that had at least one save.
        """
        forecast_days = validate_days(forecast_days)
        roi = await self.calculate_roi(monthly_cost, 30)
        history = await self.get_saved_revenue_over_time(30)
        active_days = sum(1 for point in history if point.value > 0)

        daily_revenue = roi.monthly_revenue_saved / 30
        daily_cost = roi.monthly_cost / 30
        points = []
        cumulative = 0.0
        for i in range(1, forecast_days + 1):
            cumulative += daily_revenue
            points.append(
                ForecastPoint(
                    day=roi.end_date + timedelta(days=i),
                    projected_revenue=round(daily_revenue, 2),
                    cumulative_revenue=round(cumulative, 2),
                    projected_roi=roi_percent(cumulative, daily_cost * i),
                )
            )
        return RevenueForecast(
            monthly_revenue_saved=roi.monthly_revenue_saved,
            confidence=round(active_days / len(history) * 100, 2) if history else 0.0,
            points=points,
        )

    # -----------------------------------------------------------------
    # Accelerator maintenance
    # -----------------------------------------------------------------

    async def rebuild_offer_performance(self, *, actor: str = "system") -> dict[str, int]:
        result = await self.performance.rebuild_from_events()
        await audit_logger.log(
            actor=actor,
            action="performance_rebuilt",
            resource_type="offer_performance",
            metadata=result,
        )
        return result

    async def reconcile_offer_performance(self, *, repair: bool = False) -> ReconcileReport:
        """
        Replay the event log and compare it with offer_performance.

        Decisions committed while the replay runs can show up as transient
        divergences; repair rebuilds under a table lock, which is always exact.
        """
        expected: dict[tuple, PerformanceDelta] = {}
        scanned = 0
        async for event in self.events.iter_offer_events():
            accumulate_delta(expected, (event.offer_type, event.segment), event)
            scanned += 1

        stored = {
            (row.offer_type, row.segment): row
            for row in await self.performance.list_offer_performance()
        }

        divergences = []
        for key in sorted(set(expected) | set(stored), key=lambda k: (k[0].value, k[1])):
            want = expected.get(key, PerformanceDelta())
            row = stored.get(key)
            have_shown = row.shown_count if row else 0
            have_accepted = row.accepted_count if row else 0
            have_revenue = round(float(row.revenue_total), 2) if row else 0.0
            if (want.shown, want.accepted, round(want.revenue, 2)) != (
                have_shown,
                have_accepted,
                have_revenue,
            ):
                divergences.append(
                    PerformanceDivergence(
                        offer_type=key[0],
                        segment=key[1],
                        expected_shown=want.shown,
                        actual_shown=have_shown,
                        expected_accepted=want.accepted,
                        actual_accepted=have_accepted,
                        expected_revenue=round(want.revenue, 2),
                        actual_revenue=have_revenue,
                    )
                )

        report = ReconcileReport(
            events_scanned=scanned,
            pairs_checked=len(set(expected) | set(stored)),
            divergences=divergences,
        )

        if divergences:
            logger.warning(
                "Offer performance diverges from event store",
                divergent_pairs=len(divergences),
                events_scanned=scanned,
            )
            if repair:
                await self.rebuild_offer_performance(actor="performance_reconcile")
                report.repaired = True
        else:
            logger.info("Offer performance consistent with event store", events_scanned=scanned)

        return report
