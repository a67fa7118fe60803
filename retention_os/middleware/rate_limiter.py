"""
Rate Limiter - fixed-window request limiting for the widget endpoints.

One Redis counter per API key and window (INCR + EXPIRE). Fail-open: if
Redis is unavailable the request is allowed.

Usage:
    @router.post("/start")
    async def start(
        context: GatekeeperContext = Depends(gatekeeper_context),
        _rate: None = Depends(rate_limit_widget),
    ):
        ...
"""

import time

from fastapi import Depends, HTTPException, Request, status

from retention_os.config import settings
from retention_os.infrastructure.observability.logging import get_logger
from retention_os.middleware.gatekeeper import GatekeeperContext, gatekeeper_context
from retention_os.services.redis_client import fast_redis

logger = get_logger(__name__)


class RateLimiter:
    def __init__(self, redis_client=fast_redis):
        self.redis = redis_client

    async def check(
        self, identifier: str, limit: int, window_seconds: int, now: float | None = None
    ) -> tuple[bool, dict]:
        """
        Count one request against the identifier's current window.

        Returns:
            (allowed, info) where info has limit, remaining, retry_after
        """
        current = time.time() if now is None else now
        window_index = int(current // window_seconds)
        key = f"ratelimit:widget:{identifier}:{window_index}"
        retry_after = max(1, int((window_index + 1) * window_seconds - current))

        count = await self.redis.incr_with_ttl(key, ttl_s=window_seconds)
        if count is None:
            logger.warning("Rate limit check skipped, Redis unavailable", identifier=identifier)
            return True, {"limit": limit, "remaining": limit, "retry_after": 0}

        allowed = count <= limit
        return allowed, {
            "limit": limit,
            "remaining": max(0, limit - count),
            "retry_after": 0 if allowed else retry_after,
        }


rate_limiter = RateLimiter()


async def rate_limit_widget(
    request: Request,
    context: GatekeeperContext = Depends(gatekeeper_context),
) -> None:
    """
    Rate limit dependency for widget endpoints (per API key, per client IP
    when no key was forwarded).

    Raises:
        HTTPException: 429 if the window's budget is spent
    """
    if not settings.RATE_LIMIT_ENABLED:
        return

    identifier = context.api_key_id
    if not identifier:
        identifier = f"ip:{request.client.host if request.client else 'unknown'}"

    limits = settings.get_rate_limits()
    allowed, info = await rate_limiter.check(identifier, limits["limit"], limits["window_seconds"])
    request.state.rate_limit_info = info

    if not allowed:
        logger.warning(
            "Widget rate limit exceeded",
            identifier=identifier,
            limit=info["limit"],
            retry_after=info["retry_after"],
            path=request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": f"Too many requests. Try again in {info['retry_after']} seconds.",
                "limit": info["limit"],
                "retry_after": info["retry_after"],
            },
            headers={"Retry-After": str(info["retry_after"])},
        )
