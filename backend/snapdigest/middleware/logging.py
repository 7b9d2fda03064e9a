"""
SnapDigest Backend — Request Logging Middleware
=================================================

What:  One access log line per HTTP request on the "snapdigest.access" logger.
Why:   Latency and status per route, correlated with the request id.
How:   Times call_next(), picks the level from the status code, logs with
       structured `extra` fields for log shippers that read them.
When:  Inside RequestIDMiddleware, so current_request_id() is bound.

What we log vs what we DON'T log (privacy):
    Log: method, path, status, duration, IP, request ID
    Don't log: request bodies (the text users summarize), initData
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from snapdigest.middleware.rate_limit import client_ip
from snapdigest.middleware.request_id import current_request_id

logger = logging.getLogger("snapdigest.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access logging with duration.

    Typical durations:
        - GET /health: 1-5ms (not logged)
        - POST /api/telegram/*: 1-10ms (memory only)
        - POST /api/summarize: <5ms on a dedup hit, 2-8s on a Gemini call
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        # Health checks run every few seconds
        if path == "/health":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        rid = current_request_id()
        ip = client_ip(request)
        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": ip,
            },
        )
        return response
