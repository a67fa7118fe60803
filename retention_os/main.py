# retention_os/main.py
"""
FastAPI application for the retention engine: resource lifecycle, error
mapping, request logging and routers.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, clear_contextvars

from retention_os.config import settings
from retention_os.db.pool import db_pool
from retention_os.errors import RetentionError
from retention_os.infrastructure.observability.logging import get_logger, log_request, setup_logging
from retention_os.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from retention_os.routes import ai, analytics, billing_webhook, health, retention
from retention_os.services.billing_client import close_billing_client
from retention_os.services.redis_client import fast_redis
from retention_os.services.weight_store import WeightStore

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


async def _apply_schema():
    if settings.DB_APPLY_SCHEMA_ON_STARTUP:
        await db_pool.apply_schema()


async def _seed_weights():
    await WeightStore().ensure_defaults()


# (name, open, close) in startup order; closed in reverse
RESOURCES = (
    ("database", db_pool.initialize, db_pool.close),
    ("schema", _apply_schema, None),
    ("redis", fast_redis.initialize, fast_redis.close),
    ("weights", _seed_weights, None),
)


async def _close_all(names: list[str]) -> list[str]:
    errors = []
    closers = {name: close for name, _, close in RESOURCES}
    for name in reversed(names):
        if closers[name] is None:
            continue
        try:
            await closers[name]()
        except Exception as e:
            logger.error("Error closing resource", resource=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    opened: list[str] = []
    try:
        for name, open_resource, _ in RESOURCES:
            await open_resource()
            opened.append(name)
    except Exception as e:
        logger.error("Startup failed", error=str(e), opened=opened)
        await _close_all(opened)
        raise
    logger.info("Application ready", resources=opened)

    yield

    logger.info("Application shutting down")
    errors = []
    try:
        await close_billing_client()
    except Exception as e:
        logger.error("Error closing billing client", error=str(e))
        errors.append(f"billing: {e}")
    errors += await _close_all(opened)
    if errors:
        logger.warning("Shutdown finished with errors", errors=errors)
    else:
        logger.info("Shutdown complete")


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RetentionError)
    async def retention_error_handler(request: Request, exc: RetentionError):
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.code, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app = FastAPI(
    title="Retention OS",
    description="Retention decision engine for subscription cancel flows",
    version="0.1.0",
    lifespan=lifespan,
)

register_error_handlers(app)
app.add_middleware(RateLimitHeadersMiddleware)

for router_module in (health, retention, analytics, ai, billing_webhook):
    app.include_router(router_module.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    clear_contextvars()
    api_key_id = request.headers.get("X-Api-Key-Id")
    if api_key_id:
        bind_contextvars(api_key_id=api_key_id)

    started = time.perf_counter()
    response = await call_next(request)
    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        api_key_id=api_key_id,
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
