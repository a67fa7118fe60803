"""
Gatekeeper context.

Authentication happens in the upstream gateway, which forwards the
resolved API key and owner as headers. The engine trusts them as given.
"""

from dataclasses import dataclass

from fastapi import Header
from structlog.contextvars import bind_contextvars

API_KEY_HEADER = "X-Api-Key-Id"
OWNER_HEADER = "X-Owner-Id"


@dataclass(frozen=True)
class GatekeeperContext:
    api_key_id: str | None = None
    owner_id: str | None = None

    @property
    def actor(self) -> str:
        """Identity recorded in audit rows."""
        return self.owner_id or self.api_key_id or "anonymous"


async def gatekeeper_context(
    x_api_key_id: str | None = Header(default=None, alias=API_KEY_HEADER),
    x_owner_id: str | None = Header(default=None, alias=OWNER_HEADER),
) -> GatekeeperContext:
    context = GatekeeperContext(api_key_id=x_api_key_id, owner_id=x_owner_id)
    bind_contextvars(api_key_id=context.api_key_id, owner_id=context.owner_id)
    return context
