"""
Repository for scoring weights and their audit trail.

Bounds are enforced twice: the SQL clamps every adjustment to [0, 10] and
the table carries a CHECK constraint.

Model nudges run as one autocommit statement outside any decision
transaction, so the weight row is locked for that statement only.
"""

import psycopg

from retention_os.db.helpers import fetch_all, fetch_one
from retention_os.db.pool import db_pool
from retention_os.models.domain.retention_domain import Weight

WEIGHT_MIN = 0.0
WEIGHT_MAX = 10.0

ADJUST_WEIGHT_SQL = f"""
WITH prev AS (
    SELECT name, value FROM weights WHERE name = %(name)s FOR UPDATE
), updated AS (
    UPDATE weights w
    SET value = LEAST({WEIGHT_MAX}, GREATEST({WEIGHT_MIN}, prev.value + %(delta)s)),
        updated_at = NOW()
    FROM prev
    WHERE w.name = prev.name
    RETURNING prev.value AS old_value, w.value AS new_value
)
INSERT INTO weight_audit (name, old_value, new_value, actor, reason)
SELECT %(name)s, old_value, new_value, %(actor)s, %(reason)s FROM updated
RETURNING old_value, new_value
"""


class WeightRepository:
    @staticmethod
    async def list_all() -> list[Weight]:
        rows = await fetch_all(
            "SELECT name, value, description, updated_at FROM weights ORDER BY name"
        )
        return [Weight.model_validate(row) for row in rows]

    @staticmethod
    async def get(
        name: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> Weight | None:
        row = await fetch_one(
            "SELECT name, value, description, updated_at FROM weights WHERE name = %s",
            (name,),
            connection=connection,
        )
        return Weight.model_validate(row) if row else None

    @staticmethod
    async def ensure(name: str, value: float, description: str) -> None:
        """Insert a weight if it does not exist yet; existing values are kept."""
        await fetch_one(
            """
            INSERT INTO weights (name, value, description) VALUES (%s, %s, %s)
            ON CONFLICT (name) DO NOTHING
            RETURNING name
            """,
            (name, value, description),
        )

    @staticmethod
    async def set_value(
        name: str, value: float, *, actor: str, reason: str | None = None
    ) -> tuple[float, float] | None:
        """
        Overwrite a weight and append an audit row in one transaction.

        Returns:
            (old_value, new_value), or None if the weight does not exist
        """
        async with db_pool.transaction() as conn:
            return await _write(conn, name, actor, reason, value)

    @staticmethod
    async def adjust(
        name: str, delta: float, *, actor: str, reason: str | None = None
    ) -> tuple[float, float] | None:
        """Add delta to a weight, clamped to [0, 10], and audit it in one statement."""
        row = await fetch_one(
            ADJUST_WEIGHT_SQL,
            {"name": name, "delta": delta, "actor": actor, "reason": reason},
        )
        if row is None:
            return None
        return float(row["old_value"]), float(row["new_value"])


async def _write(
    conn: psycopg.AsyncConnection, name: str, actor: str, reason: str | None, value: float
) -> tuple[float, float] | None:
    current = await fetch_one(
        "SELECT value FROM weights WHERE name = %s FOR UPDATE", (name,), connection=conn
    )
    if current is None:
        return None

    updated = await fetch_one(
        """
        UPDATE weights SET value = %s, updated_at = NOW()
        WHERE name = %s
        RETURNING value
        """,
        (value, name),
        connection=conn,
    )
    old_value = float(current["value"])
    new_value = float(updated["value"])

    await fetch_one(
        """
        INSERT INTO weight_audit (name, old_value, new_value, actor, reason)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (name, old_value, new_value, actor, reason),
        connection=conn,
    )
    return old_value, new_value
