# retention_os/db/pool.py
"""
Process-wide PostgreSQL pool for the retention engine.

Connections come out of the pool in autocommit mode with dict rows, UTC and
a statement timeout. Multi-statement writes (decision recording, webhook
processing, billing confirmation) go through transaction(); repositories
join it by taking the yielded connection.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Pool is reported unhealthy above this share of connections in use
UTILIZATION_LIMIT_PERCENT = 90


class DatabasePoolManager:
    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("initialize() called on an open pool")
            return
        if self._closed:
            raise RuntimeError("Database pool was closed and cannot be reopened")

        pool_config = settings.get_db_pool_config()
        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await self.pool.open(wait=True)
            self._initialized = True
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except Exception as e:
            logger.error("Failed to open database pool", error=str(e))
            self._initialized = False
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Could not open database pool: {e}") from e

        logger.info(
            "Database pool ready",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
        )

    @staticmethod
    async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"retention-os-{settings.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(
                sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_MS}ms")
            )
        )

    async def apply_schema(self) -> None:
        """Create missing tables, indexes and append-only triggers."""
        async with self.transaction() as conn:
            await conn.execute(SCHEMA_PATH.read_text())
        logger.info("Database schema applied", path=str(SCHEMA_PATH))

    async def close(self) -> None:
        if self._closed or not self._initialized:
            return

        self._initialized = False
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, abandoning connections")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection."""
        if not self._initialized or self.pool is None:
            raise RuntimeError("Database pool is not open")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection inside one transaction.

        Usage:
            async with db_pool.transaction() as conn:
                event = await EventRepository.insert_offer_event(new_event, connection=conn)
                await SubscriptionRepository.apply_local_mutation(..., connection=conn)
                # Commit on exit, rollback if the block raises
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not self._initialized or self.pool is None:
            return {"healthy": False, "error": "Pool not initialized"}

        try:
            started = time.perf_counter()
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
            round_trip_ms = (time.perf_counter() - started) * 1000
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"healthy": False, "error": f"{type(e).__name__}: {e}"}

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        utilization = (size - available) / size * 100 if size else 0.0

        result: dict[str, Any] = {
            "healthy": utilization < UTILIZATION_LIMIT_PERCENT,
            "round_trip_ms": round(round_trip_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": round(utilization, 1),
                "requests_waiting": waiting,
            },
        }
        if waiting:
            result["warnings"] = [f"{waiting} requests waiting for a connection"]
        return result


db_pool = DatabasePoolManager()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
