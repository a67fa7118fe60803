# retention_os/db/helpers.py
"""
Thin query helpers for the repository layer.

Every helper takes an optional ``connection`` so repositories can join an
open transaction; without one a pooled autocommit connection is borrowed.
psycopg errors surface as DatabaseError, flagged recoverable when a retry
could succeed.
"""

import asyncio
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import errors as pg_errors

from retention_os.db.pool import db_pool
from retention_os.errors import RetentionError
from retention_os.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Dropped connections plus serialization and deadlock aborts under
# concurrent counter upserts
TRANSIENT_ERRORS = (
    psycopg.OperationalError,
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
)


class DatabaseError(Exception):
    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@asynccontextmanager
async def _guarded(
    operation: str, query: str, connection: psycopg.AsyncConnection | None
) -> AsyncIterator[psycopg.AsyncConnection]:
    try:
        if connection is not None:
            yield connection
        else:
            async with db_pool.connection() as conn:
                yield conn
    except psycopg.Error as e:
        transient = isinstance(e, TRANSIENT_ERRORS)
        log = logger.warning if transient else logger.error
        log("Query failed", operation=operation, query=query[:100], transient=transient, error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation=operation, recoverable=transient) from e


async def fetch_one(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """First row of ``query`` as a dict, or None."""
    async with _guarded("fetch_one", query, connection) as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchone()


async def fetch_all(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    async with _guarded("fetch_all", query, connection) as conn:
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()


async def execute_query(
    query: str, params: tuple | dict = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Run a write and return the affected row count."""
    async with _guarded("execute_query", query, connection) as conn:
        cursor = await conn.execute(query, params)
        return cursor.rowcount


async def execute_transaction(queries_and_params: list[tuple]) -> bool:
    """
    Run ``(query, params)`` pairs atomically.

    Example:
        await execute_transaction([
            ("DELETE FROM offer_performance", ()),
            ("INSERT INTO offer_performance ...", (...)),
        ])
    """
    try:
        async with db_pool.transaction() as conn:
            for query, params in queries_and_params:
                await conn.execute(query, params)
    except psycopg.Error as e:
        logger.error("Transaction rolled back", statements=len(queries_and_params), error=str(e))
        raise DatabaseError(
            f"Transaction failed: {e}",
            operation="transaction",
            recoverable=isinstance(e, TRANSIENT_ERRORS),
        ) from e
    return True


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a coroutine on recoverable database failures with exponential
    backoff. Engine errors and permanent failures propagate immediately.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except RetentionError:
                    raise
                except (DatabaseError, *TRANSIENT_ERRORS) as e:
                    if not getattr(e, "recoverable", True):
                        logger.error("Permanent database failure", operation=func.__name__, error=str(e))
                        raise
                    if attempt == max_retries:
                        logger.error(
                            "Database retries exhausted",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e
                    delay = base_delay * 2**attempt
                    attempt += 1
                    logger.warning(
                        "Retrying database operation",
                        operation=func.__name__,
                        attempt=attempt,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
