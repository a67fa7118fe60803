"""
Repository for retention attempts (one per started cancel flow).
"""

import psycopg

from retention_os.db.helpers import fetch_one
from retention_os.models.domain.retention_domain import (
    OPEN_ATTEMPT_STATES,
    AttemptState,
    RetentionAttempt,
)

ATTEMPT_COLUMNS = "id, user_id, subscription_id, flow_id, segment, state, created_at, updated_at"

_OPEN_STATES = [state.value for state in OPEN_ATTEMPT_STATES]


def _to_attempt(row) -> RetentionAttempt | None:
    return RetentionAttempt.model_validate(row) if row else None


class AttemptRepository:
    @staticmethod
    async def create(
        *,
        user_id: int,
        subscription_id: int,
        flow_id: int,
        segment: str,
        connection: psycopg.AsyncConnection | None = None,
    ) -> RetentionAttempt:
        row = await fetch_one(
            f"""
            INSERT INTO retention_attempts (user_id, subscription_id, flow_id, segment, state)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {ATTEMPT_COLUMNS}
            """,
            (user_id, subscription_id, flow_id, segment, AttemptState.STARTED.value),
            connection=connection,
        )
        return _to_attempt(row)

    @staticmethod
    async def get(
        attempt_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> RetentionAttempt | None:
        row = await fetch_one(
            f"SELECT {ATTEMPT_COLUMNS} FROM retention_attempts WHERE id = %s",
            (attempt_id,),
            connection=connection,
        )
        return _to_attempt(row)

    @staticmethod
    async def latest_open(
        flow_id: int, user_id: int | None = None
    ) -> RetentionAttempt | None:
        """Most recent open attempt for a flow, optionally narrowed to one user."""
        if user_id is not None:
            row = await fetch_one(
                f"""
                SELECT {ATTEMPT_COLUMNS} FROM retention_attempts
                WHERE flow_id = %s AND user_id = %s AND state = ANY(%s)
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (flow_id, user_id, _OPEN_STATES),
            )
        else:
            row = await fetch_one(
                f"""
                SELECT {ATTEMPT_COLUMNS} FROM retention_attempts
                WHERE flow_id = %s AND state = ANY(%s)
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (flow_id, _OPEN_STATES),
            )
        return _to_attempt(row)

    @staticmethod
    async def transition(
        attempt_id: int,
        *,
        from_states: list[AttemptState],
        to_state: AttemptState,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """Compare-and-set the attempt state; False if it moved underneath us."""
        row = await fetch_one(
            """
            UPDATE retention_attempts SET state = %s, updated_at = NOW()
            WHERE id = %s AND state = ANY(%s)
            RETURNING id
            """,
            (to_state.value, attempt_id, [s.value for s in from_states]),
            connection=connection,
        )
        return row is not None
