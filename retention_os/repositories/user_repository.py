"""
Repository for widget users (external identities).
"""

import psycopg

from retention_os.db.helpers import execute_query, fetch_one
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.models.domain.retention_domain import UserRecord

logger = get_logger(__name__)

USER_COLUMNS = "id, external_id, email, plan, region, created_at, updated_at"


class UserRepository:
    """Find-or-create and lookups for users."""

    @staticmethod
    async def upsert_by_external_id(
        external_id: str,
        *,
        email: str | None = None,
        plan: str | None = None,
        region: str | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> UserRecord:
        """Atomic find-or-create; observed plan/region/email overwrite stored ones."""
        row = await fetch_one(
            f"""
            INSERT INTO users (external_id, email, plan, region)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (external_id) DO UPDATE SET
                email = COALESCE(EXCLUDED.email, users.email),
                plan = COALESCE(EXCLUDED.plan, users.plan),
                region = COALESCE(EXCLUDED.region, users.region),
                updated_at = NOW()
            RETURNING {USER_COLUMNS}
            """,
            (external_id, email, plan, region),
            connection=connection,
        )
        return UserRecord.model_validate(row)

    @staticmethod
    async def get_by_id(
        user_id: int, *, connection: psycopg.AsyncConnection | None = None
    ) -> UserRecord | None:
        row = await fetch_one(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
            connection=connection,
        )
        return UserRecord.model_validate(row) if row else None

    @staticmethod
    async def get_by_external_id(
        external_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> UserRecord | None:
        row = await fetch_one(
            f"SELECT {USER_COLUMNS} FROM users WHERE external_id = %s",
            (external_id,),
            connection=connection,
        )
        return UserRecord.model_validate(row) if row else None

    @staticmethod
    async def update_plan(
        user_id: int, plan: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> None:
        await execute_query(
            "UPDATE users SET plan = %s, updated_at = NOW() WHERE id = %s",
            (plan, user_id),
            connection=connection,
        )
        logger.debug("User plan updated", user_id=user_id, plan=plan)
