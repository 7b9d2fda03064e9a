"""
SnapDigest Backend — User Profile Route
=========================================

What:  POST /api/user/profile: the mini app header (name, photo, premium
       badge) and the quota counter in one call.
Why:   The mini app opens with this call; everything it shows before the
       first summary comes from here.
How:   SummaryService.get_user_profile() verifies initData, takes the user
       object Telegram signed, and adds QuotaTracker.peek(). Nothing is
       consumed.

Identity:
    initData only. A bare user_id (accepted by /api/telegram/*) is not
    enough here: it carries no profile fields and is not signed.
"""

from fastapi import APIRouter, Depends

from snapdigest.routes.dependencies import get_summary_service
from snapdigest.schemas.summary import (
    ErrorResponse,
    ProfileRequest,
    UserProfileInfo,
    UserProfileResponse,
)
from snapdigest.services.summary_service import SummaryService

router = APIRouter(prefix="/api/user", tags=["User"])


@router.post(
    "/profile",
    response_model=UserProfileResponse,
    responses={400: {"description": "initData missing or invalid", "model": ErrorResponse}},
    summary="Telegram profile and quota status",
)
async def profile(
    body: ProfileRequest,
    service: SummaryService = Depends(get_summary_service),
) -> UserProfileResponse:
    result = service.get_user_profile(body.init_data)
    user, usage = result.user, result.usage

    return UserProfileResponse(
        profile=UserProfileInfo(
            user_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            username=user.username,
            photo_url=user.photo_url,
            is_premium=user.is_premium,
            quota_used=usage.used,
            quota_remaining=usage.remaining,
            quota_limit=service.quota.daily_limit,
            quota_reset_at=usage.reset_at_iso,
        )
    )
