"""
SnapDigest Backend — Summarize Route Handler
==============================================

What:  POST /api/summarize: text in, summary and key points out.
       POST /api/send-to-telegram: re-send a summary the client already has.
Why:   The core feature. Everything else (quota, dedup, history, Telegram
       delivery) exists around this call.
How:   Thin handler: SummaryService does the work; this module maps the
       outcome to SummarizeResponse.
Who:   The web page and the Telegram mini app.

Request Flow:
    1. Body validated by SummarizeRequest
    2. SummaryService.summarize(): identity → quota → dedup → history → notify
    3. 200 with SummarizeResponse
    4. Errors are mapped by the handlers in main.py
       (400 validation, 429 quota, 503 upstream, 504 timeout)
"""

import logging

from fastapi import APIRouter, Depends

from snapdigest.routes.dependencies import get_summary_service
from snapdigest.schemas.summary import (
    ErrorResponse,
    SendToTelegramRequest,
    SendToTelegramResponse,
    SummarizeRequest,
    SummarizeResponse,
    TelegramInfo,
)
from snapdigest.services.summary_service import SummaryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Summarize"])


@router.post(
    "/summarize",
    response_model=SummarizeResponse,
    responses={
        400: {"description": "Empty or oversized text", "model": ErrorResponse},
        429: {"description": "Quota or rate limit exceeded", "model": ErrorResponse},
        503: {"description": "AI service unavailable", "model": ErrorResponse},
        504: {"description": "Summarization timed out", "model": ErrorResponse},
    },
    summary="Summarize a block of text",
    description=(
        "Returns a 2-3 sentence summary and 3-5 key points. Identical texts are "
        "served from a short-lived cache. Callers identified by Telegram initData "
        "are limited to a daily quota and get the summary delivered to their chat."
    ),
)
async def summarize(
    body: SummarizeRequest,
    service: SummaryService = Depends(get_summary_service),
) -> SummarizeResponse:
    outcome = await service.summarize(
        text=body.text,
        init_data=body.init_data,
        chat_id=body.chat_id,
    )

    return SummarizeResponse(
        summary=outcome.result.summary,
        key_points=list(outcome.result.key_points),
        cached=outcome.cached,
        quota_remaining=outcome.quota.remaining if outcome.quota else None,
        quota_reset_at=outcome.quota.reset_at_iso if outcome.quota else None,
        telegram=TelegramInfo(sent=outcome.telegram_sent, error=outcome.telegram_error),
    )


@router.post(
    "/send-to-telegram",
    response_model=SendToTelegramResponse,
    responses={
        400: {"description": "Missing summary or no target chat", "model": ErrorResponse},
        502: {"description": "Telegram did not accept the message", "model": ErrorResponse},
    },
    summary="Send an existing summary to a Telegram chat",
    description=(
        "Re-sends a summary the client already holds, to chat_id or else to the "
        "user identified by initData. No quota is consumed."
    ),
)
async def send_to_telegram(
    body: SendToTelegramRequest,
    service: SummaryService = Depends(get_summary_service),
) -> SendToTelegramResponse:
    chat_id = await service.send_summary(
        summary=body.summary,
        key_points=body.key_points,
        chat_id=body.chat_id,
        init_data=body.init_data,
    )
    return SendToTelegramResponse(chat_id=chat_id)
