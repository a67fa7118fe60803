# retention_os/routes/health.py
"""
Liveness and readiness checks.

/readyz answers 503 unless Redis answers PING, the Postgres pool is healthy
and the billing configuration is complete.
"""

import time
from typing import Any

from fastapi import APIRouter, Response, status

from retention_os.config import settings
from retention_os.db.pool import db_health_check
from retention_os.services.redis_client import fast_redis

router = APIRouter()

POOL_FIELDS = ("pool_size", "pool_available", "pool_utilization_percent")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


async def _check_redis() -> dict[str, Any]:
    started = time.perf_counter()
    try:
        answered = bool(await fast_redis.ping())
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}"}
    return {"ok": answered, "latency_ms": _elapsed_ms(started)}


async def _check_database() -> dict[str, Any]:
    started = time.perf_counter()
    try:
        report = await db_health_check()
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}", "latency_ms": _elapsed_ms(started)}

    healthy = bool(report.get("healthy"))
    check: dict[str, Any] = {"ok": healthy, "latency_ms": _elapsed_ms(started)}
    pool_stats = report.get("pool_stats") or {}
    check.update({field: pool_stats[field] for field in POOL_FIELDS if field in pool_stats})
    if report.get("warnings"):
        check["warnings"] = report["warnings"]
    if not healthy:
        check["error"] = report.get("error", "Database unhealthy")
    return check


def _check_configuration() -> dict[str, Any]:
    issues = settings.configuration_issues()
    return {"ok": not issues, "issues": issues or None, "environment": settings.environment}


@router.get("/healthz")
async def healthz():
    """Process is up."""
    return {"status": "ok", "service": "retention-os"}


@router.get("/readyz")
async def readyz(response: Response):
    checks = {
        "redis": await _check_redis(),
        "database": await _check_database(),
        "configuration": _check_configuration(),
    }
    overall_ok = all(check["ok"] for check in checks.values())
    if not overall_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
