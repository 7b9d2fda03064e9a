"""
SnapDigest Backend — Request Correlation
==========================================

What:  Gives each request a correlation id and makes it available to every
       log line and every error body written while the request runs.
Why:   One summarize call touches the access log, the quota tracker, the
       dedup cache, Gemini and Telegram. Grepping one id across all of them
       is the only practical way to follow a single user's request.
How:   RequestIDMiddleware picks the id and stores it in a ContextVar for
       the duration of the request. Everything else reads it through
       current_request_id():
           - RequestIDLogFilter copies it onto each LogRecord, so the root
             handler format can print %(request_id)s for service loggers
             that never heard of HTTP
           - error_body() stamps it into the JSON error format shared by the
             exception handlers and the rate limiter
Who:   main.setup_logging() installs the filter; main's exception handlers
       and RateLimitMiddleware build error bodies; the access logger reads
       the id directly.
When:  Outermost middleware, so even a rate-limited 429 carries an id.

Client supplied ids:
    A well-formed X-Request-ID from the caller (1-64 chars of letters,
    digits, '.', '_' or '-') is reused so a proxy's id survives end to end.
    Anything else is replaced with a fresh 8-char hex id: the value is
    written into log lines, and arbitrary client text there would let a
    caller forge log entries.
"""

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from snapdigest.exceptions import SnapDigestError

HEADER = "X-Request-ID"

_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

# Coroutine-local: concurrent requests on one thread each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def new_request_id() -> str:
    # 8 chars is enough to correlate and stays readable in logs
    return uuid.uuid4().hex[:8]


def normalize_request_id(raw: Optional[str]) -> str:
    """Reuse a well-formed client id, otherwise generate one."""
    if raw and _VALID_ID.match(raw):
        return raw
    return new_request_id()


def current_request_id() -> str:
    """Id of the request being handled, or "" outside a request."""
    return request_id_var.get()


def error_body(
    code: str,
    exc: SnapDigestError,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    The JSON error format: {error, message, details, request_id}.

    details defaults to the exception's context dict.
    """
    return {
        "error": code,
        "message": exc.message,
        "details": exc.context if details is None else details,
        "request_id": current_request_id(),
    }


class RequestIDLogFilter(logging.Filter):
    """Adds record.request_id ("-" outside a request) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        # The access logger passes its own via `extra`
        if not getattr(record, "request_id", None):
            record.request_id = current_request_id() or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds the request id for the request and echoes it as X-Request-ID."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = normalize_request_id(request.headers.get(HEADER))
        request.state.request_id = rid

        token = request_id_var.set(rid)
        # Left bound if call_next raises: the outermost 500 handler reports it
        response = await call_next(request)
        request_id_var.reset(token)

        response.headers[HEADER] = rid
        return response
