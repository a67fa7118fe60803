"""
Renewal monitoring: active subscriptions approaching the end of their
billing period, from the current_period_end the provider reports.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.analytics_domain import RenewalStats, UpcomingRenewal
from retention_os.repositories.subscription_repository import SubscriptionRepository
from retention_os.services.analytics_service import validate_days

logger = get_logger(__name__)


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days left, rounded up; a period ending later today counts as 1."""
    return max(0, math.ceil((moment - now).total_seconds() / 86400))


class RenewalService:
    def __init__(
        self,
        subscriptions=SubscriptionRepository,
        clock: Callable[[], datetime] | None = None,
    ):
        self.subscriptions = subscriptions
        self.clock = clock or (lambda: datetime.now(UTC))

    async def upcoming_renewals(self, days: int = 30) -> list[UpcomingRenewal]:
        days = validate_days(days)
        now = self.clock()
        rows = await self.subscriptions.list_renewing(now, now + timedelta(days=days))
        renewals = [
            UpcomingRenewal(**row, days_until_renewal=days_until(row["current_period_end"], now))
            for row in rows
        ]
        logger.debug("Upcoming renewals loaded", days=days, count=len(renewals))
        return renewals

    async def subscription_stats(self) -> RenewalStats:
        row = await self.subscriptions.renewal_stats(self.clock())
        return RenewalStats(
            total_active=int(row.get("total_active") or 0),
            renewing_in_7_days=int(row.get("renewing_in_7_days") or 0),
            renewing_in_30_days=int(row.get("renewing_in_30_days") or 0),
            renewing_in_90_days=int(row.get("renewing_in_90_days") or 0),
            value_at_risk=round(float(row.get("value_at_risk") or 0), 2),
            avg_days_until_renewal=round(float(row.get("avg_days_until_renewal") or 0)),
        )
