"""
SnapDigest Backend — FastAPI Application Factory
===================================================

What:  Creates and configures the FastAPI application instance.
Why:   One place for middleware, exception handlers, routes and lifecycle.
How:   create_app() returns a configured FastAPI instance; the lifespan
       builds, starts and stops the CoreRuntime.
Who:   uvicorn (uvicorn snapdigest.main:app), tests (create_app(runtime=...)).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                       FastAPI App                        │
    │                                                          │
    │  Middleware: RequestID → RateLimit → Logging → GZip/CORS │
    │                                                          │
    │  Routes:                                                 │
    │    POST /api/summarize          POST /api/telegram/*     │
    │    POST /api/send-to-telegram   POST /api/user/profile   │
    │    DELETE /api/admin/quota/{id} GET /health              │
    │                                                          │
    │  app.state.runtime: CoreRuntime                          │
    │    caches (quota, history) · dedup · Gemini · Telegram   │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → config check → runtime.start() (caches loaded,
              flush/sweep tasks running)
    Shutdown: runtime.shutdown() (tasks stopped, final cache flush)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from snapdigest import __version__
from snapdigest.config import Settings, settings as default_settings
from snapdigest.exceptions import (
    CircuitBreakerOpenError,
    IdentityError,
    LLMServiceError,
    NotFoundError,
    QuotaExceededError,
    SnapDigestError,
    SummarizationTimeoutError,
    TelegramDeliveryError,
    ValidationError,
)
from snapdigest.middleware.logging import RequestLoggingMiddleware
from snapdigest.middleware.rate_limit import RateLimitMiddleware
from snapdigest.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    current_request_id,
    error_body,
)
from snapdigest.routes import admin, health, summarize, telegram, user
from snapdigest.runtime import CoreRuntime

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logging once, before anything else logs.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s
    on stdout (Docker captures stdout). The request id comes from
    RequestIDLogFilter and is "-" for lines logged outside a request.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Third-party libraries that log every operation
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Build (unless injected), start, and finally shut down the runtime.

    Shutdown always forces a final flush of both durable caches, so quota
    counts and history survive a graceful restart.
    """
    config: Settings = app.state.settings
    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("SnapDigest Backend %s starting up...", __version__)

    # Not fatal: the server still answers health checks and serves errors
    try:
        config.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    if app.state.runtime is None:
        app.state.runtime = CoreRuntime.from_settings(config)
    runtime: CoreRuntime = app.state.runtime
    if not runtime.started:
        await runtime.start()

    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("SnapDigest Backend shutting down...")
    await runtime.shutdown()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to HTTP responses.

    Handler hierarchy:
        ValidationError / IdentityError → 400
        NotFoundError                   → 404
        QuotaExceededError              → 429 (+ Retry-After, reset_at)
        LLMServiceError                 → 503
        CircuitBreakerOpenError         → 503 (+ Retry-After)
        SummarizationTimeoutError       → 504
        TelegramDeliveryError           → 502
        SnapDigestError (base)          → 500
        Exception (fallback)            → 500

    RateLimitExceededError has no handler here: RateLimitMiddleware sits
    outside the exception handlers and renders it itself with error_body().

    Internal details (stack traces, store paths) are logged, never returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return JSONResponse(status_code=400, content=error_body("validation_error", exc))

    @app.exception_handler(IdentityError)
    async def handle_identity_error(request: Request, exc: IdentityError):
        return JSONResponse(status_code=400, content=error_body("identity_error", exc))

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=error_body("not_found", exc, details={}))

    @app.exception_handler(QuotaExceededError)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceededError):
        return JSONResponse(
            status_code=429,
            content=error_body("quota_exceeded", exc),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("Circuit breaker open: %s", exc.message)
        return JSONResponse(
            status_code=503,
            content=error_body(
                "service_unavailable", exc, details={"recovery_time": exc.recovery_time}
            ),
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(LLMServiceError)
    async def handle_llm_error(request: Request, exc: LLMServiceError):
        logger.error("LLM service error: %s", exc.message)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else {}
        return JSONResponse(
            status_code=503,
            content=error_body("llm_service_error", exc),
            headers=headers,
        )

    @app.exception_handler(SummarizationTimeoutError)
    async def handle_timeout(request: Request, exc: SummarizationTimeoutError):
        logger.warning("Summarization timed out")
        return JSONResponse(status_code=504, content=error_body("timeout", exc))

    @app.exception_handler(TelegramDeliveryError)
    async def handle_delivery_error(request: Request, exc: TelegramDeliveryError):
        logger.warning("Telegram delivery failed: %s", exc.message)
        return JSONResponse(status_code=502, content=error_body("telegram_delivery_failed", exc))

    @app.exception_handler(SnapDigestError)
    async def handle_app_error(request: Request, exc: SnapDigestError):
        rid = current_request_id()
        logger.error("%s: %s | Context: %s", type(exc).__name__, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "message": "An internal error occurred. Please try again later.",
                "request_id": rid,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = current_request_id()
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[CoreRuntime] = None,
) -> FastAPI:
    """
    Assemble the application.

    Args:
        settings: Configuration; defaults to the environment-loaded singleton.
        runtime: Pre-built runtime (tests). When omitted the lifespan builds
                 one from settings.

    No runtime is built here: importing snapdigest.main has no side effects
    beyond creating the app object.
    """
    config = settings or (runtime.settings if runtime else default_settings)

    app = FastAPI(
        title="SnapDigest API",
        description=(
            "Text summarization with per-user daily quotas, request "
            "deduplication, and Telegram mini app delivery."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.runtime = runtime

    # Executed in reverse order of addition: RequestID runs first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=config.rate_limit_requests,
        window_seconds=config.rate_limit_window,
    )
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(summarize.router)
    app.include_router(telegram.router)
    app.include_router(user.router)
    app.include_router(admin.router)
    app.include_router(health.router)

    return app


# uvicorn expects `snapdigest.main:app`
app = create_app()
