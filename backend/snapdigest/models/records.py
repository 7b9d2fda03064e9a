"""
SnapDigest Backend — Cache Record Models
==========================================

What:  Pydantic models for everything the cache engine stores or returns.
Why:   DurableCache holds plain JSON values. These models are the typed view
       services use on either side of it: validate on the way out of the
       cache, model_dump() on the way in.
Who:   QuotaTracker, DeduplicationCache, HistoryStore, ContentProcessor
       implementations, and the API schemas that wrap their results.

Timestamps are epoch milliseconds throughout. The *_iso computed fields
exist for API responses and Telegram messages.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


def ms_to_iso(ms: int) -> str:
    """Epoch milliseconds → ISO 8601 UTC string with millisecond precision."""
    return (
        datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# ══════════════════════════════════════════════════════════════════════════
# Quota
# ══════════════════════════════════════════════════════════════════════════


class QuotaRecord(BaseModel):
    """
    Stored per user in the quota cache.

    Invariants:
        count >= 0, and count never exceeds the configured limit because
        over-limit attempts are rejected without being counted.
    """
    user_id: str
    count: int = Field(ge=0)
    reset_at: int = Field(description="Epoch ms when the current window closes")


class QuotaDecision(BaseModel):
    """Result of QuotaTracker.check_and_consume()."""
    allowed: bool
    remaining: int = Field(ge=0)
    reset_at: int

    @computed_field
    @property
    def reset_at_iso(self) -> str:
        return ms_to_iso(self.reset_at)


class QuotaUsage(BaseModel):
    """Result of QuotaTracker.peek(); read-only view of the current window."""
    used: int = Field(ge=0)
    remaining: int = Field(ge=0)
    reset_at: int

    @computed_field
    @property
    def reset_at_iso(self) -> str:
        return ms_to_iso(self.reset_at)


# ══════════════════════════════════════════════════════════════════════════
# Summaries
# ══════════════════════════════════════════════════════════════════════════


class SummaryResult(BaseModel):
    """
    What the content processor produces for one input text.

    Shared by every caller that joins the same in-flight computation, so it
    is frozen: nobody can mutate the object another request is returning.
    """
    summary: str
    key_points: List[str]

    model_config = {"frozen": True}


# ══════════════════════════════════════════════════════════════════════════
# History
# ══════════════════════════════════════════════════════════════════════════


class HistoryRecord(BaseModel):
    """One past summarization for a user."""
    id: str
    user_id: str
    summary: str
    key_points: List[str]
    original_text: str = Field(description="First 200 characters of the input")
    created_at: int

    @computed_field
    @property
    def created_at_iso(self) -> str:
        return ms_to_iso(self.created_at)


class UserHistory(BaseModel):
    """Stored per user in the history cache, newest summary first."""
    user_id: str
    summaries: List[HistoryRecord] = Field(default_factory=list)
    last_updated: int


class HistoryStats(BaseModel):
    total: int
    newest: Optional[str] = None
    oldest: Optional[str] = None
