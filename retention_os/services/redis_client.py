# retention_os/services/redis_client.py
"""
Shared Redis client.

Cache and counter calls degrade to a default when Redis is unreachable so
analytics and rate limiting keep serving. Webhook queue calls raise, since
losing a delivery is worse than rejecting it.
"""

import functools

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 20


def _fail_open(default):
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, key: str, *args, **kwargs):
            try:
                await self._ensure_initialized()
                return await func(self, key, *args, **kwargs)
            except Exception as e:
                logger.error("Redis call failed", command=func.__name__, key=key[:30], error=str(e))
                return default

        return wrapper

    return decorator


class FastRedisClient:
    def __init__(self):
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self):
        if self._initialized:
            return

        self.pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=MAX_CONNECTIONS,
            retry_on_timeout=True,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            socket_connect_timeout=10,
            health_check_interval=30,
            decode_responses=True,
        )
        self.client = redis.Redis(connection_pool=self.pool)
        try:
            await self.client.ping()
        except Exception as e:
            logger.error("Redis unreachable at startup", error=str(e))
            await self.client.aclose()
            await self.pool.disconnect()
            self.client = self.pool = None
            raise RuntimeError("Redis initialization failed") from e

        self._initialized = True
        logger.info("Redis client ready", max_connections=MAX_CONNECTIONS)

    async def close(self):
        self._initialized = False
        try:
            if self.client is not None:
                await self.client.aclose()
            if self.pool is not None:
                await self.pool.disconnect()
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        else:
            logger.info("Redis client closed")

    async def _ensure_initialized(self):
        # Lazy connect covers the worker process and late restarts
        if not self._initialized:
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    @_fail_open(None)
    async def get(self, key: str) -> str | None:
        return await self.client.get(key) or None

    @_fail_open(False)
    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        return bool(await self.client.set(key, value, ex=ttl_s or None))

    @_fail_open(False)
    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    @_fail_open(None)
    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> int | None:
        """INCR and EXPIRE in one MULTI block; returns the new count."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl_s:
                pipe.expire(key, ttl_s)
            results = await pipe.execute()
        return int(results[0])

    # Queue operations. A consumer claims an item by moving it into its
    # processing list and acks it once handled, so a crash leaves the item
    # recoverable instead of lost.

    async def push(self, queue_key: str, value: str) -> int:
        await self._ensure_initialized()
        return int(await self.client.lpush(queue_key, value))

    async def claim(self, queue_key: str, processing_key: str, timeout_s: int = 5) -> str | None:
        """BLMOVE the oldest item into the processing list; None on timeout."""
        await self._ensure_initialized()
        return await self.client.blmove(queue_key, processing_key, timeout_s, "RIGHT", "LEFT")

    async def ack(self, processing_key: str, value: str) -> bool:
        await self._ensure_initialized()
        return await self.client.lrem(processing_key, 1, value) > 0

    async def requeue(self, processing_key: str, queue_key: str) -> int:
        """Move every unacked item back to the consumer end of the queue."""
        await self._ensure_initialized()
        moved = 0
        while await self.client.lmove(processing_key, queue_key, "LEFT", "RIGHT") is not None:
            moved += 1
        return moved


fast_redis = FastRedisClient()
