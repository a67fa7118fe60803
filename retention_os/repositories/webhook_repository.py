"""
Idempotency ledger for billing webhooks.
"""

import psycopg

from retention_os.db.helpers import fetch_one


class WebhookRepository:
    @staticmethod
    async def claim_event(
        event_id: str, event_type: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Record a webhook event id; False if it was processed before."""
        row = await fetch_one(
            """
            INSERT INTO processed_webhook_events (event_id, event_type) VALUES (%s, %s)
            ON CONFLICT (event_id) DO NOTHING
            RETURNING event_id
            """,
            (event_id, event_type),
            connection=connection,
        )
        return row is not None
