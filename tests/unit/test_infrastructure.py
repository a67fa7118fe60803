from unittest.mock import AsyncMock

import psycopg
import pytest
from psycopg import errors as pg_errors

from retention_os.config import Settings
from retention_os.db.helpers import DatabaseError, fetch_one, with_db_retry
from retention_os.errors import NotFound
from retention_os.services.redis_client import FastRedisClient


class RaisingCursor:
    def __init__(self, exc):
        self.exc = exc

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, query, params):
        raise self.exc


class RaisingConnection:
    def __init__(self, exc):
        self.exc = exc

    def cursor(self):
        return RaisingCursor(self.exc)


def connected_redis() -> FastRedisClient:
    client = FastRedisClient()
    client._initialized = True
    client.client = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_redis_cache_calls_fail_open():
    client = connected_redis()
    client.client.get.side_effect = ConnectionError("down")
    client.client.set.side_effect = ConnectionError("down")

    assert await client.get("analytics:summary") is None
    assert await client.set_with_ttl("analytics:summary", "{}", 60) is False


@pytest.mark.asyncio
async def test_redis_queue_calls_raise():
    client = connected_redis()
    client.client.lpush.side_effect = ConnectionError("down")

    with pytest.raises(ConnectionError):
        await client.push("billing:webhooks", "{}")


@pytest.mark.asyncio
async def test_redis_claim_moves_oldest_item_into_processing_list():
    client = connected_redis()
    client.client.blmove.return_value = "payload"

    assert await client.claim("billing:webhooks", "billing:webhooks:processing", timeout_s=1) == "payload"
    client.client.blmove.assert_awaited_once_with(
        "billing:webhooks", "billing:webhooks:processing", 1, "RIGHT", "LEFT"
    )


@pytest.mark.asyncio
async def test_redis_requeue_drains_processing_list():
    client = connected_redis()
    client.client.lmove.side_effect = ["a", "b", None]

    assert await client.requeue("billing:webhooks:processing", "billing:webhooks") == 2


@pytest.mark.asyncio
async def test_transient_psycopg_error_is_recoverable():
    conn = RaisingConnection(psycopg.OperationalError("server closed the connection"))

    with pytest.raises(DatabaseError) as exc:
        await fetch_one("SELECT 1", connection=conn)

    assert exc.value.recoverable is True
    assert exc.value.operation == "fetch_one"


@pytest.mark.asyncio
async def test_permanent_psycopg_error_is_not_recoverable():
    conn = RaisingConnection(pg_errors.UndefinedTable("relation does not exist"))

    with pytest.raises(DatabaseError) as exc:
        await fetch_one("SELECT * FROM missing", connection=conn)

    assert exc.value.recoverable is False


@pytest.mark.asyncio
async def test_with_db_retry_retries_recoverable_errors():
    calls = []

    @with_db_retry(max_retries=2, base_delay=0)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise DatabaseError("deadlock", operation="execute_query")
        return "done"

    assert await flaky() == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_with_db_retry_gives_up_and_skips_engine_errors():
    calls = []

    @with_db_retry(max_retries=1, base_delay=0)
    async def always_down():
        calls.append(1)
        raise DatabaseError("connection refused")

    with pytest.raises(DatabaseError) as exc:
        await always_down()
    assert len(calls) == 2
    assert exc.value.recoverable is False

    @with_db_retry(max_retries=3, base_delay=0)
    async def missing():
        calls.append(1)
        raise NotFound("Flow 9 not found")

    with pytest.raises(NotFound):
        await missing()
    assert len(calls) == 3


def test_development_pool_is_capped():
    dev = Settings(environment="development", DB_POOL_MIN_SIZE=5, DB_POOL_MAX_SIZE=20)
    prod = Settings(environment="production", DB_POOL_MIN_SIZE=5, DB_POOL_MAX_SIZE=20)

    assert dev.get_db_pool_config()["max_size"] == 8
    assert dev.get_db_pool_config()["min_size"] == 2
    assert prod.get_db_pool_config()["max_size"] == 20


def test_configuration_issues():
    assert Settings(BILLING_PROVIDER_ENABLED=False).configuration_issues() == []
    assert Settings(BILLING_PROVIDER_ENABLED=True, BILLING_WEBHOOK_SECRET=None).configuration_issues() == [
        "BILLING_WEBHOOK_SECRET not set"
    ]
    assert Settings(BILLING_PROVIDER_ENABLED=True, BILLING_WEBHOOK_SECRET="whsec").configuration_issues() == []
