"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from retention_os.main import app

client = TestClient(app)

HEALTHY_DB = {
    "healthy": True,
    "pool_stats": {"pool_size": 3, "pool_available": 2, "pool_utilization_percent": 33.3},
}


def test_healthz_endpoint():
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "retention-os"}


def test_readyz_all_services_healthy():
    with (
        patch("retention_os.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("retention_os.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["redis"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 3
    assert data["checks"]["configuration"]["ok"] is True


def test_readyz_redis_down():
    with (
        patch("retention_os.routes.health.fast_redis.ping", new=AsyncMock(side_effect=ConnectionError("refused"))),
        patch("retention_os.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    data = response.json()
    assert data["overall_ok"] is False
    assert "ConnectionError" in data["checks"]["redis"]["error"]


def test_readyz_database_unhealthy():
    with (
        patch("retention_os.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch(
            "retention_os.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": False, "error": "pool exhausted"}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"]["database"]["error"] == "pool exhausted"


def test_readyz_missing_webhook_secret():
    with (
        patch("retention_os.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("retention_os.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("retention_os.routes.health.settings.BILLING_PROVIDER_ENABLED", True),
        patch("retention_os.routes.health.settings.BILLING_WEBHOOK_SECRET", None),
    ):
        response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"]["configuration"]["issues"] == ["BILLING_WEBHOOK_SECRET not set"]
