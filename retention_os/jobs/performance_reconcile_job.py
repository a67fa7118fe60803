"""
Periodic reconciliation of offer_performance against the event store.
Divergent counters are repaired by a locked rebuild.
"""

import asyncio

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.services.analytics_service import AnalyticsService

logger = get_logger(__name__)


async def run_performance_reconcile(service: AnalyticsService | None = None) -> dict:
    service = service or AnalyticsService(cache=None)
    report = await service.reconcile_offer_performance(repair=True)
    summary = {
        "events_scanned": report.events_scanned,
        "pairs_checked": report.pairs_checked,
        "divergent_pairs": len(report.divergences),
        "repaired": report.repaired,
    }
    logger.info("Performance reconcile completed", **summary)
    return summary


async def start_performance_reconcile_scheduler():
    logger.info(
        "Starting performance reconcile scheduler",
        interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
    )

    while True:
        try:
            await run_performance_reconcile()
            await asyncio.sleep(settings.RECONCILE_INTERVAL_SECONDS)
        except Exception as e:
            logger.error(
                "Error in performance reconcile scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
