"""
Queue of billing mutations that failed or timed out on the decision path.

Rows are claimed with FOR UPDATE SKIP LOCKED so several confirmation
workers can drain the queue without double-calling the provider.
"""

from datetime import UTC, datetime, timedelta

import psycopg
from psycopg.types.json import Jsonb

from retention_os.db.helpers import fetch_all, fetch_one
from retention_os.models.domain.retention_domain import OfferType, PendingBillingMutation

MUTATION_COLUMNS = (
    "id, offer_event_id, subscription_id, offer_type, params, status, "
    "attempts, next_attempt_at, last_error"
)


def _to_mutation(row) -> PendingBillingMutation | None:
    return PendingBillingMutation.model_validate(row) if row else None


class PendingMutationRepository:
    @staticmethod
    async def create(
        *,
        offer_event_id: int,
        subscription_id: int,
        offer_type: OfferType,
        params: dict,
        last_error: str | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> PendingBillingMutation | None:
        row = await fetch_one(
            f"""
            INSERT INTO pending_billing_mutations
                (offer_event_id, subscription_id, offer_type, params, last_error)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (offer_event_id) DO NOTHING
            RETURNING {MUTATION_COLUMNS}
            """,
            (offer_event_id, subscription_id, offer_type.value, Jsonb(params), last_error),
            connection=connection,
        )
        return _to_mutation(row)

    @staticmethod
    async def claim_due(
        limit: int, *, connection: psycopg.AsyncConnection
    ) -> list[PendingBillingMutation]:
        """Lock due rows for the caller's transaction."""
        rows = await fetch_all(
            f"""
            SELECT {MUTATION_COLUMNS} FROM pending_billing_mutations
            WHERE status = 'pending' AND next_attempt_at <= NOW()
            ORDER BY next_attempt_at
            LIMIT %s
            FOR UPDATE SKIP LOCKED
            """,
            (limit,),
            connection=connection,
        )
        return [PendingBillingMutation.model_validate(row) for row in rows]

    @staticmethod
    async def list_pending_for_subscription(
        subscription_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> list[PendingBillingMutation]:
        rows = await fetch_all(
            f"""
            SELECT {MUTATION_COLUMNS} FROM pending_billing_mutations
            WHERE subscription_id = %s AND status = 'pending'
            ORDER BY id
            """,
            (subscription_id,),
            connection=connection,
        )
        return [PendingBillingMutation.model_validate(row) for row in rows]

    @staticmethod
    async def record_failure(
        mutation_id: int,
        *,
        error: str,
        max_attempts: int,
        backoff_base_seconds: float,
        connection: psycopg.AsyncConnection | None = None,
    ) -> PendingBillingMutation | None:
        """Count a failed attempt; the row is marked failed once attempts run out."""
        current = await fetch_one(
            "SELECT attempts FROM pending_billing_mutations WHERE id = %s",
            (mutation_id,),
            connection=connection,
        )
        if current is None:
            return None

        attempts = current["attempts"] + 1
        status = "failed" if attempts >= max_attempts else "pending"
        next_attempt_at = datetime.now(UTC) + timedelta(
            seconds=backoff_base_seconds * (2 ** (attempts - 1))
        )
        row = await fetch_one(
            f"""
            UPDATE pending_billing_mutations SET
                attempts = %s, status = %s, next_attempt_at = %s,
                last_error = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {MUTATION_COLUMNS}
            """,
            (attempts, status, next_attempt_at, error[:500], mutation_id),
            connection=connection,
        )
        return _to_mutation(row)

    @staticmethod
    async def resolve(
        mutation_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Mark a pending row confirmed; False if it was already resolved."""
        row = await fetch_one(
            """
            UPDATE pending_billing_mutations SET status = 'confirmed', updated_at = NOW()
            WHERE id = %s AND status = 'pending'
            RETURNING id
            """,
            (mutation_id,),
            connection=connection,
        )
        return row is not None
