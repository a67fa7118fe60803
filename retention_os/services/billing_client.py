"""
Billing provider clients for retention-driven subscription changes.
Low-level Stripe-compatible REST client plus a local provider for
subscriptions that are not linked to a billing account.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from retention_os.config import settings
from retention_os.errors import BillingMutationFailed
from retention_os.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Retries stay inside the caller's BILLING_TIMEOUT_SECONDS budget
MAX_RETRIES = 2
BACKOFF_FACTOR = 0.25
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class BillingProvider(Protocol):
    async def apply_pause(
        self, billing_ref: str, months: int, *, idempotency_key: str | None = None
    ) -> dict[str, Any]: ...

    async def apply_downgrade(
        self, billing_ref: str, plan: str, *, idempotency_key: str | None = None
    ) -> dict[str, Any]: ...

    async def apply_discount(
        self,
        billing_ref: str,
        percent: int,
        duration_months: int,
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]: ...


class LocalBillingProvider:
    """Provider for subscriptions managed only in this database; always succeeds."""

    async def apply_pause(self, billing_ref, months, *, idempotency_key=None):
        logger.info("Local pause applied", billing_ref=billing_ref, months=months)
        return {"provider": "local", "action": "pause", "months": months}

    async def apply_downgrade(self, billing_ref, plan, *, idempotency_key=None):
        logger.info("Local downgrade applied", billing_ref=billing_ref, plan=plan)
        return {"provider": "local", "action": "downgrade", "plan": plan}

    async def apply_discount(self, billing_ref, percent, duration_months, *, idempotency_key=None):
        logger.info(
            "Local discount applied",
            billing_ref=billing_ref,
            percent=percent,
            duration_months=duration_months,
        )
        return {
            "provider": "local",
            "action": "discount",
            "percent": percent,
            "duration_months": duration_months,
        }


class HttpBillingProvider:
    """
    Stripe-compatible subscription API client.

    Every mutation is sent with an Idempotency-Key, so a retried call (from
    this client or from the confirmation job) is applied at most once by the
    provider.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.BILLING_API_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.BILLING_API_KEY
        timeout = httpx.Timeout(timeout_s or settings.BILLING_TIMEOUT_SECONDS)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        self._client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, idempotency_key: str | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Billing API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Billing API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Billing API retry loop exhausted")

    async def _update_subscription(
        self, billing_ref: str, data: dict[str, Any], operation: str, idempotency_key: str | None
    ) -> dict[str, Any]:
        url = f"{self.base_url}/subscriptions/{billing_ref}"
        try:
            response = await self._request_with_retry(
                "POST", url, data=data, headers=self._headers(idempotency_key)
            )
        except httpx.TimeoutException as e:
            raise BillingMutationFailed(
                f"Billing {operation} timed out", timed_out=True, billing_ref=billing_ref
            ) from e
        except httpx.RequestError as e:
            raise BillingMutationFailed(
                f"Billing {operation} request failed: {e}", billing_ref=billing_ref
            ) from e

        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError:
                return {}

        try:
            error_info = response.json().get("error", {})
        except ValueError:
            error_info = {}
        logger.error(
            f"Billing API {operation} failed",
            status_code=response.status_code,
            billing_ref=billing_ref,
            error_code=error_info.get("code"),
            error_message=error_info.get("message"),
        )
        raise BillingMutationFailed(
            error_info.get("message") or f"Billing API error (HTTP {response.status_code})",
            billing_ref=billing_ref,
            status_code=response.status_code,
        )

    async def apply_pause(self, billing_ref, months, *, idempotency_key=None):
        resumes_at = datetime.now(UTC) + timedelta(days=30 * months)
        return await self._update_subscription(
            billing_ref,
            {
                "pause_collection[behavior]": "void",
                "pause_collection[resumes_at]": str(int(resumes_at.timestamp())),
            },
            "pause",
            idempotency_key,
        )

    async def apply_downgrade(self, billing_ref, plan, *, idempotency_key=None):
        return await self._update_subscription(
            billing_ref,
            {"plan": plan, "proration_behavior": "create_prorations"},
            "downgrade",
            idempotency_key,
        )

    async def apply_discount(self, billing_ref, percent, duration_months, *, idempotency_key=None):
        return await self._update_subscription(
            billing_ref,
            {"coupon": f"retention_{percent}pct_{duration_months}m"},
            "discount",
            idempotency_key,
        )


_local_provider = LocalBillingProvider()
_http_provider: HttpBillingProvider | None = None


def provider_for(billing_ref: str | None) -> BillingProvider:
    """Remote provider for linked subscriptions when enabled, local otherwise."""
    global _http_provider
    if not billing_ref or not settings.BILLING_PROVIDER_ENABLED:
        return _local_provider
    if _http_provider is None:
        _http_provider = HttpBillingProvider()
    return _http_provider


async def close_billing_client() -> None:
    global _http_provider
    if _http_provider is not None:
        await _http_provider.close()
        _http_provider = None
