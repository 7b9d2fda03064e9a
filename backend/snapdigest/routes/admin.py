"""
SnapDigest Backend — Admin Routes
===================================

What:  DELETE /api/admin/quota/{user_id}: give a user a fresh window now.
Why:   Support needs a way out when a user burned their quota on a bug.
How:   Shared-secret header X-Admin-Token compared in constant time with
       ADMIN_TOKEN. With no ADMIN_TOKEN configured the route answers 404,
       as if it did not exist.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from snapdigest.exceptions import NotFoundError
from snapdigest.routes.dependencies import get_runtime
from snapdigest.runtime import CoreRuntime
from snapdigest.schemas.summary import ErrorResponse, QuotaResetResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


def require_admin(
    runtime: CoreRuntime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = runtime.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        if expected:
            logger.warning("Rejected admin request with missing or wrong token")
        raise NotFoundError(resource="route")


@router.delete(
    "/quota/{user_id}",
    response_model=QuotaResetResponse,
    responses={404: {"description": "Admin API disabled or token invalid", "model": ErrorResponse}},
    dependencies=[Depends(require_admin)],
    summary="Reset a user's quota window",
)
async def reset_quota(
    user_id: str,
    runtime: CoreRuntime = Depends(get_runtime),
) -> QuotaResetResponse:
    runtime.quota.reset(user_id)
    return QuotaResetResponse(user_id=user_id, message=f"Quota reset for user {user_id}")
