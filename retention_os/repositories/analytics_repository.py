"""
Read-only aggregate queries over the event store for the dashboard.

Revenue and saved users only count saves: confirmed accepted events of an
offer type other than feedback. Shown counts only count decision events
(confirmation events are excluded).
"""

from datetime import date
from typing import Any

from retention_os.db.helpers import fetch_all, fetch_one

CONFIRMED_ACCEPT = "accepted AND status = 'confirmed'"
SAVE = f"{CONFIRMED_ACCEPT} AND offer_type <> 'feedback'"


class AnalyticsRepository:
    @staticmethod
    async def summary_totals() -> dict[str, Any]:
        row = await fetch_one(
            f"""
            SELECT
                COUNT(DISTINCT user_id) FILTER (WHERE {SAVE}) AS saved_users,
                COALESCE(SUM(revenue_saved) FILTER (WHERE {SAVE}), 0) AS revenue_saved,
                COUNT(*) FILTER (WHERE confirms_event_id IS NULL) AS offers_shown,
                COUNT(*) FILTER (WHERE {CONFIRMED_ACCEPT}) AS offers_accepted
            FROM offer_events
            """
        )
        return row or {}

    @staticmethod
    async def save_totals(since: date) -> dict[str, Any]:
        """Saved users and revenue from saves on or after since."""
        row = await fetch_one(
            f"""
            SELECT
                COUNT(DISTINCT user_id) AS saved_users,
                COALESCE(SUM(revenue_saved), 0) AS revenue_saved
            FROM offer_events
            WHERE {SAVE} AND created_at >= %s
            """,
            (since,),
        )
        return row or {}

    @staticmethod
    async def revenue_by_day(since: date) -> dict[date, float]:
        rows = await fetch_all(
            f"""
            SELECT (created_at AT TIME ZONE 'UTC')::date AS day, SUM(revenue_saved) AS total
            FROM offer_events
            WHERE {SAVE} AND created_at >= %s
            GROUP BY day
            ORDER BY day
            """,
            (since,),
        )
        return {row["day"]: float(row["total"] or 0) for row in rows}

    @staticmethod
    async def saved_users_by_day(since: date) -> dict[date, int]:
        rows = await fetch_all(
            f"""
            SELECT (created_at AT TIME ZONE 'UTC')::date AS day, COUNT(DISTINCT user_id) AS total
            FROM offer_events
            WHERE {SAVE} AND created_at >= %s
            GROUP BY day
            ORDER BY day
            """,
            (since,),
        )
        return {row["day"]: int(row["total"]) for row in rows}

    @staticmethod
    async def churn_reason_counts() -> list[dict[str, Any]]:
        return await fetch_all(
            """
            SELECT COALESCE(reason_code, 'unspecified') AS reason_code, COUNT(*) AS count
            FROM churn_reasons
            GROUP BY 1
            ORDER BY count DESC, reason_code
            """
        )

    @staticmethod
    async def offer_performance_by_type() -> list[dict[str, Any]]:
        """Accelerator rows rolled up over all segments."""
        return await fetch_all(
            """
            SELECT offer_type,
                   SUM(shown_count) AS shown_count,
                   SUM(accepted_count) AS accepted_count,
                   SUM(revenue_total) AS revenue_total
            FROM offer_performance
            GROUP BY offer_type
            ORDER BY offer_type
            """
        )
