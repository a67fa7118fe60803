"""
Repository for subscriptions.

status_changed_at holds the billing provider's timestamp of the last status
it reported, so out-of-order webhooks never regress a subscription. Local
retention changes leave it alone; the local clock is not comparable with
provider event times.
"""

from datetime import datetime
from typing import Any

import psycopg

from retention_os.db.helpers import fetch_all, fetch_one
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import SubscriptionRecord

logger = get_logger(__name__)

SUBSCRIPTION_COLUMNS = (
    "id, user_id, billing_ref, value, status, cancel_attempts, "
    "status_changed_at, current_period_end, created_at, updated_at"
)


def _to_record(row) -> SubscriptionRecord | None:
    return SubscriptionRecord.model_validate(row) if row else None


class SubscriptionRepository:
    @staticmethod
    async def get_by_id(
        subscription_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> SubscriptionRecord | None:
        row = await fetch_one(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = %s",
            (subscription_id,),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def get_by_billing_ref(
        billing_ref: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> SubscriptionRecord | None:
        row = await fetch_one(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE billing_ref = %s",
            (billing_ref,),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def get_latest_for_user(
        user_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> SubscriptionRecord | None:
        row = await fetch_one(
            f"""
            SELECT {SUBSCRIPTION_COLUMNS} FROM subscriptions
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id,),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def create(
        user_id: int,
        *,
        billing_ref: str | None = None,
        value: float | None = None,
        status: str = "active",
        connection: psycopg.AsyncConnection | None = None,
    ) -> SubscriptionRecord:
        """Create a subscription; a concurrent insert of the same billing ref wins."""
        if billing_ref:
            row = await fetch_one(
                f"""
                INSERT INTO subscriptions (user_id, billing_ref, value, status)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (billing_ref) DO UPDATE SET
                    value = COALESCE(EXCLUDED.value, subscriptions.value),
                    updated_at = NOW()
                RETURNING {SUBSCRIPTION_COLUMNS}
                """,
                (user_id, billing_ref, value, status),
                connection=connection,
            )
        else:
            row = await fetch_one(
                f"""
                INSERT INTO subscriptions (user_id, value, status)
                VALUES (%s, %s, %s)
                RETURNING {SUBSCRIPTION_COLUMNS}
                """,
                (user_id, value, status),
                connection=connection,
            )
        return _to_record(row)

    @staticmethod
    async def update_details(
        subscription_id: int,
        *,
        billing_ref: str | None = None,
        value: float | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> SubscriptionRecord:
        row = await fetch_one(
            f"""
            UPDATE subscriptions SET
                billing_ref = COALESCE(%s, billing_ref),
                value = COALESCE(%s, value),
                updated_at = NOW()
            WHERE id = %s
            RETURNING {SUBSCRIPTION_COLUMNS}
            """,
            (billing_ref, value, subscription_id),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def increment_cancel_attempts(
        subscription_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> SubscriptionRecord:
        row = await fetch_one(
            f"""
            UPDATE subscriptions
            SET cancel_attempts = cancel_attempts + 1, updated_at = NOW()
            WHERE id = %s
            RETURNING {SUBSCRIPTION_COLUMNS}
            """,
            (subscription_id,),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def apply_local_mutation(
        subscription_id: int,
        *,
        status: str | None = None,
        value: float | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> SubscriptionRecord:
        """
        Record a retention-driven change (pause, discounted value, downgrade).

        status_changed_at is left alone: it only ever holds provider event
        timestamps, which order the webhooks applied after this change.
        """
        row = await fetch_one(
            f"""
            UPDATE subscriptions SET
                status = COALESCE(%s, status),
                value = COALESCE(%s, value),
                updated_at = NOW()
            WHERE id = %s
            RETURNING {SUBSCRIPTION_COLUMNS}
            """,
            (status, value, subscription_id),
            connection=connection,
        )
        return _to_record(row)

    @staticmethod
    async def apply_provider_status(
        subscription_id: int,
        *,
        status: str,
        occurred_at: datetime,
        value: float | None = None,
        current_period_end: datetime | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """
        Apply a billing-provider status if it is newer than the stored one.

        Returns:
            True if the row changed, False if a newer state was already applied
        """
        row = await fetch_one(
            """
            UPDATE subscriptions SET
                status = %s,
                value = COALESCE(%s, value),
                current_period_end = COALESCE(%s, current_period_end),
                status_changed_at = %s,
                updated_at = NOW()
            WHERE id = %s
              AND (status_changed_at IS NULL OR status_changed_at < %s)
            RETURNING id
            """,
            (status, value, current_period_end, occurred_at, subscription_id, occurred_at),
            connection=connection,
        )
        applied = row is not None
        if not applied:
            logger.info(
                "Skipped stale subscription status",
                subscription_id=subscription_id,
                status=status,
                occurred_at=occurred_at.isoformat(),
            )
        return applied

    # Renewal monitoring reads current_period_end as reported by the provider

    @staticmethod
    async def list_renewing(start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Active subscriptions whose period ends in [start, end], soonest first."""
        return await fetch_all(
            """
            SELECT s.id AS subscription_id, s.user_id, u.external_id, u.email, u.plan,
                   s.value, s.current_period_end, s.cancel_attempts
            FROM subscriptions s
            JOIN users u ON u.id = s.user_id
            WHERE s.status = 'active'
              AND s.current_period_end BETWEEN %s AND %s
            ORDER BY s.current_period_end, s.id
            """,
            (start, end),
        )

    @staticmethod
    async def renewal_stats(now: datetime) -> dict[str, Any]:
        row = await fetch_one(
            """
            SELECT
                COUNT(*) AS total_active,
                COUNT(*) FILTER (
                    WHERE current_period_end BETWEEN %(now)s AND %(now)s + INTERVAL '7 days'
                ) AS renewing_in_7_days,
                COUNT(*) FILTER (
                    WHERE current_period_end BETWEEN %(now)s AND %(now)s + INTERVAL '30 days'
                ) AS renewing_in_30_days,
                COUNT(*) FILTER (
                    WHERE current_period_end BETWEEN %(now)s AND %(now)s + INTERVAL '90 days'
                ) AS renewing_in_90_days,
                COALESCE(SUM(value) FILTER (WHERE current_period_end >= %(now)s), 0)
                    AS value_at_risk,
                AVG(CEIL(EXTRACT(EPOCH FROM current_period_end - %(now)s) / 86400))
                    FILTER (WHERE current_period_end >= %(now)s) AS avg_days_until_renewal
            FROM subscriptions
            WHERE status = 'active'
            """,
            {"now": now},
        )
        return row or {}
