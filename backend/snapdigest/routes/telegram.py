"""
SnapDigest Backend — Telegram Mini App Routes
===============================================

What:  Per-user views used by the Telegram mini app:
         POST /api/telegram/user-stats   quota usage + history overview
         POST /api/telegram/history      recent summaries
         POST /api/telegram/send-stats   the same, sent as bot messages
Why:   The mini app shows "x of 10 used" and the last summaries, and can
       forward either to the chat as a pre-rendered message.
How:   Resolve the user (explicit user_id, else verified initData), then
       read from QuotaTracker.peek() and HistoryStore. Nothing is consumed.
       send-stats pushes the rendered messages through TelegramNotifier and
       fails with 502 when the quota message does not go out.

Identity:
    Unlike /api/summarize there is no anonymous path here: without a user
    these endpoints have nothing to show, so IdentityError (400) is raised.
"""

import logging

from fastapi import APIRouter, Depends

from snapdigest.routes.dependencies import get_summary_service
from snapdigest.schemas.summary import (
    ErrorResponse,
    HistoryInfo,
    HistoryItem,
    HistoryPreview,
    HistoryResponse,
    QuotaInfo,
    SendStatsRequest,
    SendStatsResponse,
    UserLookupRequest,
    UserStatsResponse,
)
from snapdigest.services.summary_service import SummaryService
from snapdigest.services.telegram_service import format_history, format_quota

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telegram", tags=["Telegram"])


@router.post(
    "/user-stats",
    response_model=UserStatsResponse,
    responses={400: {"description": "User could not be determined", "model": ErrorResponse}},
    summary="Quota usage and history overview for a user",
)
async def user_stats(
    body: UserLookupRequest,
    service: SummaryService = Depends(get_summary_service),
) -> UserStatsResponse:
    user_id = service.resolve_known_user(init_data=body.init_data, user_id=body.user_id)
    stats = service.get_user_stats(user_id)
    limit = service.quota.daily_limit
    max_history = service.history.max_per_user

    return UserStatsResponse(
        user_id=user_id,
        quota=QuotaInfo(
            used=stats.usage.used,
            remaining=stats.usage.remaining,
            limit=limit,
            reset_at=stats.usage.reset_at_iso,
            percentage_used=round(stats.usage.used / limit * 100),
        ),
        history=HistoryInfo(
            total=stats.history_stats.total,
            max=max_history,
            newest=stats.history_stats.newest,
            oldest=stats.history_stats.oldest,
            recent=[
                HistoryPreview(
                    id=record.id,
                    created_at=record.created_at_iso,
                    preview=record.original_text[:50],
                )
                for record in stats.recent
            ],
        ),
        telegram_message=format_quota(stats.usage, limit),
    )


@router.post(
    "/history",
    response_model=HistoryResponse,
    responses={400: {"description": "User could not be determined", "model": ErrorResponse}},
    summary="Recent summaries for a user, newest first",
)
async def history(
    body: UserLookupRequest,
    service: SummaryService = Depends(get_summary_service),
) -> HistoryResponse:
    user_id = service.resolve_known_user(init_data=body.init_data, user_id=body.user_id)
    records = service.get_user_history(user_id)
    max_history = service.history.max_per_user

    return HistoryResponse(
        user_id=user_id,
        history_count=len(records),
        max_history=max_history,
        summaries=[
            HistoryItem(
                id=record.id,
                summary=record.summary,
                key_points=record.key_points,
                original_text=record.original_text,
                created_at=record.created_at_iso,
            )
            for record in records
        ],
        telegram_message=format_history(records, max_history),
    )


@router.post(
    "/send-stats",
    response_model=SendStatsResponse,
    responses={
        400: {"description": "User could not be determined", "model": ErrorResponse},
        502: {"description": "Telegram did not accept the message", "model": ErrorResponse},
    },
    summary="Send quota usage (and recent history) to the user's Telegram chat",
)
async def send_stats(
    body: SendStatsRequest,
    service: SummaryService = Depends(get_summary_service),
) -> SendStatsResponse:
    user_id = service.resolve_known_user(init_data=body.init_data, user_id=body.user_id)
    delivery = await service.send_user_stats(user_id, include_history=body.include_history)
    return SendStatsResponse(
        user_id=delivery.user_id,
        quota_sent=delivery.quota_sent,
        history_sent=delivery.history_sent,
    )
