import pytest

from retention_os.infrastructure.audit.audit_logger import AuditLogger
from retention_os.middleware.rate_limiter import rate_limiter
from tests.fakes import Engine, FakeBillingProvider, FakeQueueRedis


@pytest.fixture(autouse=True)
def audit_calls(monkeypatch):
    """Capture audit events instead of writing them to PostgreSQL."""
    calls = []

    async def _log(actor, action, resource_type=None, resource_id=None, metadata=None):
        calls.append(
            {
                "actor": actor,
                "action": action,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "metadata": metadata,
            }
        )
        return True

    monkeypatch.setattr(AuditLogger, "log", staticmethod(_log))
    return calls


@pytest.fixture(autouse=True)
def fake_rate_limit_redis(monkeypatch):
    redis = FakeQueueRedis()
    monkeypatch.setattr(rate_limiter, "redis", redis)
    return redis


@pytest.fixture
def fake_redis():
    return FakeQueueRedis()


@pytest.fixture
def billing_provider():
    return FakeBillingProvider()


@pytest.fixture
def engine(billing_provider):
    return Engine(provider=billing_provider)


@pytest.fixture
def gatekeeper_headers():
    return {"X-Api-Key-Id": "key-1", "X-Owner-Id": "owner-1"}
