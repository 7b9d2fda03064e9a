"""
SnapDigest Backend — Rate Limiting Middleware
===============================================

What:  Per-IP fixed window rate limiter in front of every API route.
Why:   Anonymous callers have no per-user quota. This caps what any single
       address can cost before identity is even looked at.
How:   One {count, reset_at} counter per client IP, held in memory.
Who:   Applied to every request via Starlette middleware.
When:  Right after RequestIDMiddleware (rejects abuse before any processing).

Rejections are RateLimitExceededError rendered with the shared error_body(),
so a 429 from here looks exactly like every other error response.

Algorithm: Fixed Window Counter
    1. Look up the counter for the client IP
    2. Missing or expired → new window: count=0, reset_at=now+window
    3. count < limit → count += 1, allow
    4. otherwise → 429 with Retry-After = seconds until reset_at

    Same shape as the per-user QuotaTracker, keyed by address instead of
    user and never persisted.

Client IP:
    The first address in X-Forwarded-For when present (the app normally
    runs behind a proxy), else the socket peer.

Headers on every limited response:
    X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset (epoch s)
"""

import logging
import math
import time
from typing import Dict, NamedTuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from snapdigest.exceptions import RateLimitExceededError
from snapdigest.middleware.request_id import error_body

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Caller address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return getattr(request.client, "host", "unknown") if request.client else "unknown"


class _Window(NamedTuple):
    count: int
    reset_at: float


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory fixed window rate limiter.

    Args:
        max_requests: Requests allowed per window per IP (default 100).
        window_seconds: Window length (default 900 = 15 minutes).

    Excluded paths:
        /health and the API docs are never limited.

    Single-process only: each uvicorn worker keeps its own counters.
    """

    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    # Inactive counters are dropped every this many requests
    CLEANUP_EVERY = 1000

    def __init__(self, app, max_requests: int = 100, window_seconds: int = 900, clock=time.time):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._seen = 0

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        ip = client_ip(request)
        now = self._clock()

        window = self._windows.get(ip)
        if window is None or now > window.reset_at:
            window = _Window(count=0, reset_at=now + self.window_seconds)

        if window.count >= self.max_requests:
            self._windows[ip] = window
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.warning(
                "Rate limit exceeded for IP %s: %d requests in %ds window",
                ip,
                window.count,
                self.window_seconds,
            )
            # Outside the app's exception handlers, so rendered here
            exc = RateLimitExceededError(retry_after=retry_after)
            return JSONResponse(
                status_code=429,
                content=error_body("rate_limit_exceeded", exc),
                headers={
                    "Retry-After": str(exc.retry_after),
                    **self._headers(window, remaining=0),
                },
            )

        window = window._replace(count=window.count + 1)
        self._windows[ip] = window

        self._seen += 1
        if self._seen % self.CLEANUP_EVERY == 0:
            self._cleanup_expired(now)

        response = await call_next(request)
        response.headers.update(
            self._headers(window, remaining=self.max_requests - window.count)
        )
        return response

    def _headers(self, window: _Window, remaining: int) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.max_requests),
            "X-RateLimit-Remaining": str(max(0, remaining)),
            "X-RateLimit-Reset": str(int(window.reset_at)),
        }

    def _cleanup_expired(self, now: float) -> None:
        expired = [ip for ip, window in self._windows.items() if now > window.reset_at]
        for ip in expired:
            del self._windows[ip]
        if expired:
            logger.debug("Cleaned up %d expired rate limit windows", len(expired))
