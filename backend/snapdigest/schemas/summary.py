"""
SnapDigest Backend — Pydantic Request/Response Schemas
=======================================================

What:  Pydantic models defining the HTTP contract of the summarization API.
Why:   Request validation, response serialization and OpenAPI docs from one
       source.
Who:   Route handlers (summarize, telegram, user, admin, health).

Design Decision:
    These are separate from snapdigest.models.records. Records are what the
    caches store; schemas are what clients see. Timestamps are epoch ms in
    records and ISO 8601 strings here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class SummarizeRequest(BaseModel):
    """
    What:  Body of POST /api/summarize.

    Length checks live in SummaryService so the limit comes from Settings
    and the error uses the application's ValidationError format.
    """
    text: str = Field(description="Text to summarize")
    init_data: Optional[str] = Field(
        default=None,
        description="Telegram WebApp initData; identifies the user for quota and history",
    )
    chat_id: Optional[str] = Field(
        default=None,
        description="Telegram chat to deliver the summary to (defaults to the user)",
    )


class UserLookupRequest(BaseModel):
    """Body of the /api/telegram/* endpoints. One of the two is required."""
    init_data: Optional[str] = Field(default=None, description="Telegram WebApp initData")
    user_id: Optional[str] = Field(default=None, description="Telegram user id")


class SendStatsRequest(UserLookupRequest):
    """Body of POST /api/telegram/send-stats."""
    include_history: bool = Field(
        default=True, description="Also send the recent summaries message"
    )


class SendToTelegramRequest(BaseModel):
    """
    What:  Body of POST /api/send-to-telegram.

    Forwards a summary the client already has. chat_id wins over initData.
    """
    summary: str = Field(description="Summary text to send")
    key_points: List[str] = Field(description="Key points to send")
    chat_id: Optional[str] = Field(default=None, description="Target Telegram chat")
    init_data: Optional[str] = Field(
        default=None, description="Telegram WebApp initData; the user's own chat is the target"
    )


class ProfileRequest(BaseModel):
    """Body of POST /api/user/profile."""
    init_data: Optional[str] = Field(default=None, description="Telegram WebApp initData")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class TelegramInfo(BaseModel):
    sent: bool = Field(default=False, description="Whether the summary reached Telegram")
    error: Optional[str] = Field(default=None, description="Delivery error, if any")


class SummarizeResponse(BaseModel):
    """
    What:  Result of POST /api/summarize.

    quota_remaining / quota_reset_at are null for anonymous callers, who
    are not tracked.
    """
    success: bool = True
    summary: str = Field(description="2-3 sentence summary")
    key_points: List[str] = Field(description="3-5 key points")
    cached: bool = Field(description="Served from the dedup cache or a shared in-flight call")
    quota_remaining: Optional[int] = Field(default=None, description="Summaries left in window")
    quota_reset_at: Optional[str] = Field(default=None, description="Window end (ISO 8601)")
    telegram: TelegramInfo = Field(default_factory=TelegramInfo)


class QuotaInfo(BaseModel):
    used: int
    remaining: int
    limit: int
    reset_at: str = Field(description="Window end (ISO 8601)")
    percentage_used: int = Field(description="used / limit, rounded percent")


class HistoryPreview(BaseModel):
    id: str
    created_at: str
    preview: str = Field(description="First 50 characters of the original text")


class HistoryInfo(BaseModel):
    total: int
    max: int
    newest: Optional[str] = None
    oldest: Optional[str] = None
    recent: List[HistoryPreview] = Field(default_factory=list)


class UserStatsResponse(BaseModel):
    """
    What:  Result of POST /api/telegram/user-stats.

    telegram_message is the same information pre-rendered as Telegram HTML,
    so the mini app can forward it to the chat as-is.
    """
    success: bool = True
    user_id: str
    quota: QuotaInfo
    history: HistoryInfo
    telegram_message: str


class HistoryItem(BaseModel):
    id: str
    summary: str
    key_points: List[str]
    original_text: str
    created_at: str


class HistoryResponse(BaseModel):
    """What:  Result of POST /api/telegram/history, newest first."""
    success: bool = True
    user_id: str
    history_count: int
    max_history: int
    summaries: List[HistoryItem]
    telegram_message: str


class SendStatsResponse(BaseModel):
    """
    What:  Result of POST /api/telegram/send-stats.

    history_sent is null when include_history was false.
    """
    success: bool = True
    user_id: str
    quota_sent: bool
    history_sent: Optional[bool] = None
    message: str = "Stats sent to Telegram"


class SendToTelegramResponse(BaseModel):
    success: bool = True
    chat_id: str
    message: str = "Summary sent to Telegram"


class UserProfileInfo(BaseModel):
    user_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    is_premium: bool = False
    quota_used: int
    quota_remaining: int
    quota_limit: int
    quota_reset_at: str = Field(description="Window end (ISO 8601)")


class UserProfileResponse(BaseModel):
    """What:  Result of POST /api/user/profile."""
    success: bool = True
    profile: UserProfileInfo


class QuotaResetResponse(BaseModel):
    success: bool = True
    user_id: str
    message: str


# ══════════════════════════════════════════════════════════════════════════
# Error / Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error body for every API error.

    Example:
        {
            "error": "quota_exceeded",
            "message": "Daily summarization limit reached. ...",
            "details": {"reset_at": "2026-01-02T10:00:00.000Z", "limit": 10},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  GET /health body.

    Status levels:
        healthy:  runtime started, circuit closed
        degraded: runtime started, Gemini circuit open or half-open
        starting: runtime not started yet (or already stopped)
    """
    status: str = Field(description="healthy, degraded, or starting")
    version: str = Field(description="Application version")
    gemini: Optional[str] = Field(default=None, description="Circuit breaker state")
    upstream: Optional[bool] = Field(
        default=None, description="Upstream reachable; only set by /health?deep=true"
    )
    caches: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    dedup: Dict[str, int] = Field(default_factory=dict)
    uptime_seconds: float = Field(description="Seconds since the runtime started")
