"""
Request dependencies shared by the routers.

- Gatekeeper context (identity resolved by the upstream auth gateway)
- Widget rate limiting (per API key, fixed window)
"""

from retention_os.middleware.gatekeeper import GatekeeperContext, gatekeeper_context
from retention_os.middleware.rate_limiter import rate_limit_widget, rate_limiter

__all__ = ["GatekeeperContext", "gatekeeper_context", "rate_limit_widget", "rate_limiter"]
