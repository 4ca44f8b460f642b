"""
Per-client request rate limiting.

Every request to the service counts against the caller's IP address in a
fixed window, whatever its path (MCP, REST, discovery and the demo backend
alike). Responses carry the IETF draft-7 RateLimit headers:

    RateLimit-Policy: 100;w=60
    RateLimit: limit=100, remaining=42, reset=17

Counters live in process memory, so each instance limits on its own.
"""

import logging
import math
import time

from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Answers 429 once a client IP exceeds `limit` (e.g. "100/minute")."""

    def __init__(self, app: ASGIApp, limit: str = "100/minute"):
        super().__init__(app)
        self.item: RateLimitItem = parse(limit)
        self.limiter = FixedWindowRateLimiter(MemoryStorage())

    @staticmethod
    def client_key(request: Request) -> str:
        return request.client.host if request.client else "unknown"

    def _headers(self, remaining: int, reset: int) -> dict[str, str]:
        return {
            "RateLimit-Policy": f"{self.item.amount};w={self.item.get_expiry()}",
            "RateLimit": f"limit={self.item.amount}, remaining={remaining}, reset={reset}",
        }

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        key = self.client_key(request)
        allowed = self.limiter.hit(self.item, key)
        stats = self.limiter.get_window_stats(self.item, key)
        reset = max(0, math.ceil(stats.reset_time - time.time()))
        headers = self._headers(stats.remaining, reset)

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"log_data": {"client": key, "path": request.url.path, "limit": str(self.item)}},
            )
            return JSONResponse(
                {
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests, please try again later."},
                },
                status_code=429,
                headers={**headers, "Retry-After": str(reset)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
