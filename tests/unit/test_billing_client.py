import httpx
import pytest

from retention_os.config import settings
from retention_os.errors import BillingMutationFailed
from retention_os.services import billing_client
from retention_os.services.billing_client import (
    HttpBillingProvider,
    LocalBillingProvider,
    provider_for,
)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(billing_client, "BACKOFF_FACTOR", 0)


def make_provider(handler) -> HttpBillingProvider:
    return HttpBillingProvider(
        base_url="https://billing.test/v1",
        api_key="sk_test",
        timeout_s=1,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_discount_sends_coupon_and_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "sub_1", "discount": {"id": "di_1"}})

    provider = make_provider(handler)
    result = await provider.apply_discount("sub_1", 20, 3, idempotency_key="dec-1")
    await provider.close()

    assert result["discount"] == {"id": "di_1"}
    [request] = seen
    assert request.url.path == "/v1/subscriptions/sub_1"
    assert request.headers["Idempotency-Key"] == "dec-1"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert b"coupon=retention_20pct_3m" in request.content


@pytest.mark.asyncio
async def test_retries_server_errors_once():
    statuses = iter([503, 200])

    def handler(request):
        return httpx.Response(next(statuses), json={"id": "sub_1"})

    provider = make_provider(handler)
    assert await provider.apply_pause("sub_1", 2, idempotency_key="dec-2") == {"id": "sub_1"}
    await provider.close()


@pytest.mark.asyncio
async def test_provider_error_raises_billing_mutation_failed():
    def handler(request):
        return httpx.Response(402, json={"error": {"code": "card_declined", "message": "Card declined"}})

    provider = make_provider(handler)
    with pytest.raises(BillingMutationFailed) as exc:
        await provider.apply_downgrade("sub_1", "basic")
    await provider.close()

    assert exc.value.message == "Card declined"
    assert exc.value.timed_out is False


@pytest.mark.asyncio
async def test_timeout_is_reported_as_timed_out():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = make_provider(handler)
    with pytest.raises(BillingMutationFailed) as exc:
        await provider.apply_discount("sub_1", 10, 1)
    await provider.close()

    assert exc.value.timed_out is True


def test_provider_for_uses_local_provider_when_unlinked(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_PROVIDER_ENABLED", True)

    assert isinstance(provider_for(None), LocalBillingProvider)

    monkeypatch.setattr(settings, "BILLING_PROVIDER_ENABLED", False)
    assert isinstance(provider_for("sub_1"), LocalBillingProvider)
