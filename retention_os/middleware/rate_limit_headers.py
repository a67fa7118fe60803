"""
Adds X-RateLimit-Limit / X-RateLimit-Remaining to widget responses.

Reads request.state.rate_limit_info, set by rate_limit_widget. Requests that
never went through the limiter get no headers. The 429 response carries its
own Retry-After.
"""

from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        info = getattr(request.state, "rate_limit_info", None)
        if info:
            response.headers["X-RateLimit-Limit"] = str(info["limit"])
            response.headers["X-RateLimit-Remaining"] = str(info["remaining"])

        return response
