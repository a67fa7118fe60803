"""
Offer / message performance counters.

Every write is a single increment-upsert keyed by the table's unique pair,
so concurrent decisions on the same (offer_type, segment) cannot lose an
update. Rates are derived at read time.
"""

import psycopg

from retention_os.db.helpers import execute_transaction, fetch_all, fetch_one
from retention_os.db.pool import db_pool
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import (
    MessagePerformance,
    OfferPerformance,
    OfferType,
)

logger = get_logger(__name__)

OFFER_UPSERT_SQL = """
    INSERT INTO offer_performance (offer_type, segment, shown_count, accepted_count, revenue_total)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (offer_type, segment) DO UPDATE SET
        shown_count = offer_performance.shown_count + EXCLUDED.shown_count,
        accepted_count = offer_performance.accepted_count + EXCLUDED.accepted_count,
        revenue_total = offer_performance.revenue_total + EXCLUDED.revenue_total,
        updated_at = NOW()
"""

MESSAGE_UPSERT_SQL = """
    INSERT INTO message_performance (message_template, offer_type, shown_count, accepted_count, revenue_total)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (message_template, offer_type) DO UPDATE SET
        shown_count = message_performance.shown_count + EXCLUDED.shown_count,
        accepted_count = message_performance.accepted_count + EXCLUDED.accepted_count,
        revenue_total = message_performance.revenue_total + EXCLUDED.revenue_total,
        updated_at = NOW()
"""


class PerformanceRepository:
    @staticmethod
    async def mark_event_applied(
        event_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Claim an event in the model ledger; False if it was applied before."""
        row = await fetch_one(
            """
            INSERT INTO model_event_ledger (event_id) VALUES (%s)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            (event_id,),
            connection=connection,
        )
        return row is not None

    @staticmethod
    async def increment_offer_performance(
        offer_type: OfferType,
        segment: str,
        *,
        shown: int,
        accepted: int,
        revenue: float,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        if connection is not None:
            await connection.execute(
                OFFER_UPSERT_SQL, (offer_type.value, segment, shown, accepted, revenue)
            )
        else:
            await execute_transaction(
                [(OFFER_UPSERT_SQL, (offer_type.value, segment, shown, accepted, revenue))]
            )

    @staticmethod
    async def increment_message_performance(
        message_template: str,
        offer_type: OfferType,
        *,
        shown: int,
        accepted: int,
        revenue: float,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        params = (message_template, offer_type.value, shown, accepted, revenue)
        if connection is not None:
            await connection.execute(MESSAGE_UPSERT_SQL, params)
        else:
            await execute_transaction([(MESSAGE_UPSERT_SQL, params)])

    @staticmethod
    async def list_offer_performance(segment: str | None = None) -> list[OfferPerformance]:
        if segment is None:
            rows = await fetch_all(
                """
                SELECT offer_type, segment, shown_count, accepted_count, revenue_total
                FROM offer_performance
                ORDER BY offer_type, segment
                """
            )
        else:
            rows = await fetch_all(
                """
                SELECT offer_type, segment, shown_count, accepted_count, revenue_total
                FROM offer_performance
                WHERE segment = %s
                ORDER BY offer_type
                """,
                (segment,),
            )
        return [OfferPerformance.model_validate(row) for row in rows]

    @staticmethod
    async def list_message_performance(offer_type: OfferType) -> list[MessagePerformance]:
        rows = await fetch_all(
            """
            SELECT message_template, offer_type, shown_count, accepted_count, revenue_total
            FROM message_performance
            WHERE offer_type = %s
            ORDER BY message_template
            """,
            (offer_type.value,),
        )
        return [MessagePerformance.model_validate(row) for row in rows]

    @staticmethod
    async def rebuild_from_events() -> dict[str, int]:
        """
        Recompute both accelerator tables from offer_events in one transaction.

        The exclusive table locks make concurrent decision upserts wait until
        the rebuilt rows are committed, so no increment is lost or doubled.
        """
        async with db_pool.transaction() as conn:
            await conn.execute(
                "LOCK TABLE offer_performance, message_performance IN EXCLUSIVE MODE"
            )
            await conn.execute("DELETE FROM offer_performance")
            await conn.execute("DELETE FROM message_performance")
            offer_cursor = await conn.execute(
                f"""
                INSERT INTO offer_performance (offer_type, segment, shown_count, accepted_count, revenue_total)
                SELECT offer_type, segment, {_AGGREGATE_COLUMNS}
                FROM offer_events
                GROUP BY offer_type, segment
                """
            )
            message_cursor = await conn.execute(
                f"""
                INSERT INTO message_performance (message_template, offer_type, shown_count, accepted_count, revenue_total)
                SELECT message_template, offer_type, {_AGGREGATE_COLUMNS}
                FROM offer_events
                GROUP BY message_template, offer_type
                """
            )
            await conn.execute(
                """
                INSERT INTO model_event_ledger (event_id)
                SELECT id FROM offer_events
                ON CONFLICT (event_id) DO NOTHING
                """
            )

        result = {"offer_rows": offer_cursor.rowcount, "message_rows": message_cursor.rowcount}
        logger.info("Performance tables rebuilt from event store", **result)
        return result


# Same deltas as scoring_service.performance_delta, expressed in SQL
_AGGREGATE_COLUMNS = """
    COUNT(*) FILTER (WHERE confirms_event_id IS NULL),
    COUNT(*) FILTER (WHERE accepted AND status = 'confirmed'),
    COALESCE(SUM(revenue_saved) FILTER (WHERE accepted AND status = 'confirmed'), 0)
"""
