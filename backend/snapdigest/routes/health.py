"""
SnapDigest Backend — Health Check Route
=========================================

What:  GET /health for Docker health checks and load balancers.
How:   Reads CoreRuntime.stats(): cache and dedup counters, circuit breaker
       state, uptime. The plain check makes no upstream call, so frequent
       checks cost nothing.

Deep check (GET /health?deep=true):
    Also asks the ContentProcessor whether its upstream answers
    (GeminiSummarizer lists models, which consumes no tokens). Meant for a
    human or a slow readiness check, not an every-few-seconds liveness check.
    The answer is reported as `upstream`; an unreachable upstream makes the
    status degraded.

Status levels:
    - healthy:  runtime running, Gemini circuit closed (and upstream reachable
                when deep)
    - degraded: runtime running, circuit open or half-open, or the deep check
                failed (summaries fail fast or not at all)
    - starting: runtime not running; answered with HTTP 503
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from snapdigest.routes.dependencies import get_runtime
from snapdigest.runtime import CoreRuntime
from snapdigest.schemas.summary import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(
    deep: bool = Query(default=False, description="Also check the summarization upstream"),
    runtime: CoreRuntime = Depends(get_runtime),
):
    stats = runtime.stats()
    breaker_state = stats["circuit_breaker"]

    upstream = None
    if deep and runtime.started:
        upstream = await runtime.processor.health_check()
        if not upstream:
            logger.warning("Deep health check: summarization upstream unreachable")

    if not runtime.started:
        status = "starting"
    elif breaker_state not in (None, "closed") or upstream is False:
        status = "degraded"
    else:
        status = "healthy"

    body = HealthResponse(
        status=status,
        version=stats["version"],
        gemini=breaker_state,
        upstream=upstream,
        caches=stats["caches"],
        dedup=stats["dedup"],
        uptime_seconds=stats["uptime_seconds"],
    )
    if status == "starting":
        return JSONResponse(status_code=503, content=body.model_dump())
    return body
