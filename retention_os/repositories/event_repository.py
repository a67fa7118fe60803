"""
Event store: append-only offer events and churn reasons.

Nothing in this module updates or deletes a row; the schema enforces the
same with triggers.
"""

from collections.abc import AsyncIterator

import psycopg

from retention_os.db.helpers import fetch_all, fetch_one
from retention_os.db.pool import db_pool
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import ChurnReason, NewOfferEvent, OfferEvent

logger = get_logger(__name__)

EVENT_COLUMNS = (
    "id, decision_id::text AS decision_id, user_id, flow_id, attempt_id, offer_type, segment, "
    "message_template, accepted, status, revenue_saved, confirms_event_id, created_at"
)


class EventRepository:
    @staticmethod
    async def insert_offer_event(
        event: NewOfferEvent, *, connection: psycopg.AsyncConnection | None = None
    ) -> OfferEvent | None:
        """
        Append an offer event.

        Returns:
            The stored event, or None if this decision_id was already recorded
        """
        row = await fetch_one(
            f"""
            INSERT INTO offer_events (
                decision_id, user_id, flow_id, attempt_id, offer_type, segment,
                message_template, accepted, status, revenue_saved, confirms_event_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (decision_id) DO NOTHING
            RETURNING {EVENT_COLUMNS}
            """,
            (
                event.decision_id,
                event.user_id,
                event.flow_id,
                event.attempt_id,
                event.offer_type.value,
                event.segment,
                event.message_template,
                event.accepted,
                event.status.value,
                event.revenue_saved,
                event.confirms_event_id,
            ),
            connection=connection,
        )
        if row is None:
            logger.info("Offer event already recorded", decision_id=event.decision_id)
            return None
        return OfferEvent.model_validate(row)

    @staticmethod
    async def get_offer_event(
        event_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> OfferEvent | None:
        row = await fetch_one(
            f"SELECT {EVENT_COLUMNS} FROM offer_events WHERE id = %s",
            (event_id,),
            connection=connection,
        )
        return OfferEvent.model_validate(row) if row else None

    @staticmethod
    async def get_by_decision_id(
        decision_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> OfferEvent | None:
        row = await fetch_one(
            f"SELECT {EVENT_COLUMNS} FROM offer_events WHERE decision_id = %s",
            (decision_id,),
            connection=connection,
        )
        return OfferEvent.model_validate(row) if row else None

    @staticmethod
    async def list_recent_decisions(user_id: int, limit: int = 10) -> list[OfferEvent]:
        """Most recent decision events of a user (confirmation events excluded)."""
        rows = await fetch_all(
            f"""
            SELECT {EVENT_COLUMNS} FROM offer_events
            WHERE user_id = %s AND confirms_event_id IS NULL
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [OfferEvent.model_validate(row) for row in rows]

    @staticmethod
    async def iter_offer_events(batch_size: int = 1000) -> AsyncIterator[OfferEvent]:
        """Stream the whole event log in id order (used for rebuilds)."""
        # Server-side cursors need an open transaction
        async with db_pool.transaction() as conn:
            async with conn.cursor(name="offer_event_replay") as cur:
                cur.itersize = batch_size
                await cur.execute(f"SELECT {EVENT_COLUMNS} FROM offer_events ORDER BY id")
                async for row in cur:
                    yield OfferEvent.model_validate(row)

    @staticmethod
    async def insert_churn_reason(
        *,
        user_id: int | None,
        flow_id: int | None,
        reason_code: str | None,
        reason_text: str | None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> ChurnReason:
        row = await fetch_one(
            """
            INSERT INTO churn_reasons (user_id, flow_id, reason_code, reason_text)
            VALUES (%s, %s, %s, %s)
            RETURNING id, user_id, flow_id, reason_code, reason_text, created_at
            """,
            (user_id, flow_id, reason_code, reason_text),
            connection=connection,
        )
        return ChurnReason.model_validate(row)
