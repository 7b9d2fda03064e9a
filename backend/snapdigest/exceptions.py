"""
SnapDigest Backend — Custom Exception Hierarchy
=================================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services and middleware; caught by global handlers.

Exception Hierarchy:
    SnapDigestError (base)
    ├── ValidationError            → 400 Bad Request (client can fix)
    ├── IdentityError              → 400 Bad Request (no usable user identity)
    ├── NotFoundError              → 404 Not Found
    ├── QuotaExceededError         → 429 Too Many Requests (per-user daily quota)
    ├── RateLimitExceededError     → 429 Too Many Requests (per-IP throttle)
    ├── LLMServiceError            → 503 Service Unavailable (retry later)
    ├── CircuitBreakerOpenError    → 503 Service Unavailable (circuit open)
    ├── SummarizationTimeoutError  → 504 Gateway Timeout
    ├── TelegramDeliveryError      → 502 Bad Gateway (explicit send failed)
    ├── PersistenceError           → never leaves the cache layer
    └── InFlightConflictError      → programming error in dedup usage

Two of these never reach a client:
    PersistenceError is raised by blob stores and caught inside DurableCache,
    which logs it and retries on the next flush. InFlightConflictError is
    raised when code registers a second computation for a fingerprint instead
    of joining the first one.

Quota exhaustion inside the core is a normal QuotaDecision(allowed=False).
QuotaExceededError only exists so the orchestrator can turn that decision
into a 429 through the same handler machinery as every other error.
"""

from typing import Any, Dict, Optional


class SnapDigestError(Exception):
    """
    Base exception for all SnapDigest application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client
                  unless a handler explicitly chooses to)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(SnapDigestError):
    """
    Raised when client input fails business validation.

    When:    Empty text, text longer than max_text_length.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class IdentityError(SnapDigestError):
    """
    Raised when an endpoint that needs a user cannot determine one.

    When:    /api/telegram/* called without a user_id and without valid initData.
    HTTP:    400 Bad Request

    Not raised by /api/summarize: there an unresolvable identity simply
    means the anonymous path (no quota consumed, no history recorded).
    """

    def __init__(
        self,
        message: str = "Unable to determine user ID",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(SnapDigestError):
    """
    Raised when a requested resource does not exist.

    When:    Admin route disabled, unknown summary id.
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class QuotaExceededError(SnapDigestError):
    """
    Raised when an identified user has used up the summarizations of the
    current rolling window.

    HTTP:    429 Too Many Requests

    Response includes:
        - reset_at: ISO timestamp when the window closes
        - Retry-After header in seconds
    """

    def __init__(
        self,
        limit: int,
        reset_at_iso: str,
        retry_after: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Daily summarization limit reached. You have {limit} summarizations "
            f"per day. Try again after {reset_at_iso}"
        )
        ctx = context or {}
        ctx["reset_at"] = reset_at_iso
        ctx["limit"] = limit
        super().__init__(message=message, context=ctx)
        self.limit = limit
        self.reset_at_iso = reset_at_iso
        self.retry_after = retry_after


class RateLimitExceededError(SnapDigestError):
    """
    Built by RateLimitMiddleware when a client exceeds the per-IP request
    rate limit. The middleware runs outside the app's exception handlers,
    so it renders the error itself through error_body().

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class LLMServiceError(SnapDigestError):
    """
    Raised when the summarization service fails after all retries, or
    returns something that is not a usable summary.

    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "AI summarization service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(SnapDigestError):
    """
    Raised when the circuit breaker is in OPEN state.

    When:    After cb_failure_threshold consecutive failures (default: 5).
    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class SummarizationTimeoutError(SnapDigestError):
    """
    Raised when one summarization call exceeds summarize_timeout_seconds.

    HTTP:    504 Gateway Timeout
    """

    def __init__(
        self,
        timeout_seconds: int = 30,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["timeout_seconds"] = timeout_seconds
        super().__init__(
            message="Summarization timed out. Please try with shorter text.",
            context=ctx,
        )
        self.timeout_seconds = timeout_seconds


class TelegramDeliveryError(SnapDigestError):
    """
    Raised when an explicit send request could not be delivered.

    When:    /api/send-to-telegram or /api/telegram/send-stats with no bot
             token configured, or Telegram refusing the message.
    HTTP:    502 Bad Gateway

    Not raised for the delivery that follows a summary: that one is
    best-effort and reported in the summarize response instead.
    """

    def __init__(
        self,
        message: str = "Failed to send message to Telegram",
        chat_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if chat_id:
            ctx["chat_id"] = chat_id
        super().__init__(message=message, context=ctx)
        self.chat_id = chat_id


class PersistenceError(SnapDigestError):
    """
    Raised by a BlobStore when loading or saving a cache snapshot fails.

    Contained: DurableCache catches it, logs it, and keeps the dirty flag set
    so the next flush retries. Request handlers never see it.
    """

    def __init__(
        self,
        message: str = "Cache persistence operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InFlightConflictError(SnapDigestError):
    """
    Raised by DeduplicationCache.register_in_flight when a computation for
    the same fingerprint is already registered. The caller should have
    joined the existing one via lookup_in_flight.
    """

    def __init__(
        self,
        fingerprint: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["fingerprint"] = fingerprint
        super().__init__(
            message=f"A computation is already in flight for fingerprint {fingerprint[:12]}",
            context=ctx,
        )
        self.fingerprint = fingerprint
