"""
SnapDigest Backend — Summary Service (Business Logic Orchestrator)
===================================================================

What:  Coordinates identity → quota → dedup → history → delivery for one
       summarization request, plus the per-user stats and history views.
Why:   Keeps every business rule out of the route handlers; routes only
       translate HTTP to calls and results to JSON.
How:   Composes the core engine (QuotaTracker, DeduplicationCache,
       HistoryStore) with the external collaborators (ContentProcessor,
       TelegramIdentityResolver, TelegramNotifier).
Who:   Built by CoreRuntime; called by the summarize, telegram and user routes.

Orchestration Flow (POST /api/summarize):
    ┌──────────┐   ┌──────────┐   ┌──────────┐   ┌──────────┐   ┌──────────┐
    │ Validate │──▶│ Identity │──▶│  Quota   │──▶│  Dedup   │──▶│ History  │
    │   text   │   │ (initData│   │   gate   │   │ + Gemini │   │ + notify │
    └──────────┘   └──────────┘   └──────────┘   └──────────┘   └──────────┘

Anonymous Path:
    A missing or invalid credential is not an error. The request is served
    without touching any quota record and without recording history.

Quota Accounting:
    Quota is consumed before the summary is produced, including when the
    answer comes from the dedup cache. A request that then fails upstream
    keeps its consumption; the user is told how many calls remain.
"""

import logging
import math
from typing import Callable, List, NamedTuple, Optional

from snapdigest.cache.durable import epoch_ms
from snapdigest.exceptions import (
    IdentityError,
    QuotaExceededError,
    TelegramDeliveryError,
    ValidationError,
)
from snapdigest.models.records import (
    HistoryRecord,
    HistoryStats,
    QuotaDecision,
    QuotaUsage,
    SummaryResult,
)
from snapdigest.services.dedup_service import ORIGIN_COMPUTED, DeduplicationCache
from snapdigest.services.history_service import HistoryStore
from snapdigest.services.identity_service import TelegramIdentityResolver, TelegramUser
from snapdigest.services.llm_base import ContentProcessor
from snapdigest.services.quota_service import QuotaTracker
from snapdigest.services.telegram_service import (
    TelegramNotifier,
    format_history,
    format_quota,
    format_summary,
)

logger = logging.getLogger(__name__)


class SummaryOutcome(NamedTuple):
    """Everything the summarize route reports back."""

    result: SummaryResult
    cached: bool
    user_id: Optional[str]
    quota: Optional[QuotaDecision]
    telegram_sent: bool
    telegram_error: Optional[str]


class UserStats(NamedTuple):
    user_id: str
    usage: QuotaUsage
    history_stats: HistoryStats
    recent: List[HistoryRecord]


class UserProfile(NamedTuple):
    user: TelegramUser
    usage: QuotaUsage


class StatsDelivery(NamedTuple):
    user_id: str
    quota_sent: bool
    # None when history was not requested
    history_sent: Optional[bool]


class SummaryService:
    """
    Business logic layer for summarization.

    Error Handling Strategy:
        Input problems raise ValidationError before any state changes.
        QuotaExceededError is raised before the processor is called.
        Processor errors (LLMServiceError, CircuitBreakerOpenError,
        SummarizationTimeoutError) propagate unchanged. Delivery after a
        summary never raises; its failure is reported in the outcome. The
        explicit send operations raise TelegramDeliveryError instead.
    """

    def __init__(
        self,
        quota: QuotaTracker,
        dedup: DeduplicationCache,
        history: HistoryStore,
        processor: ContentProcessor,
        identity: TelegramIdentityResolver,
        notifier: TelegramNotifier,
        max_text_length: int = 10_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.quota = quota
        self.dedup = dedup
        self.history = history
        self.processor = processor
        self.identity = identity
        self.notifier = notifier
        self.max_text_length = max_text_length
        self._clock = clock or epoch_ms

    def _validate_text(self, text: Optional[str]) -> str:
        if not text or not text.strip():
            raise ValidationError(message="No text provided for summarization", field="text")
        if len(text) > self.max_text_length:
            raise ValidationError(
                message=(
                    f"Text is too long. Maximum {self.max_text_length} characters allowed "
                    f"(you provided {len(text)} characters)"
                ),
                field="text",
                context={"max_length": self.max_text_length, "length": len(text)},
            )
        return text

    def _enforce_quota(self, user_id: str) -> QuotaDecision:
        decision = self.quota.check_and_consume(user_id)
        if not decision.allowed:
            retry_after = max(1, math.ceil((decision.reset_at - self._clock()) / 1000))
            raise QuotaExceededError(
                limit=self.quota.daily_limit,
                reset_at_iso=decision.reset_at_iso,
                retry_after=retry_after,
            )
        return decision

    async def summarize(
        self,
        text: Optional[str],
        init_data: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> SummaryOutcome:
        """
        Summarize `text` for the caller identified by `init_data`.

        Args:
            text: Raw input text.
            init_data: Telegram WebApp initData; optional.
            chat_id: Explicit Telegram chat to deliver to. Defaults to the
                     identified user's own chat.

        Raises:
            ValidationError: Empty or oversized text.
            QuotaExceededError: Identified user has no quota left.
            LLMServiceError / CircuitBreakerOpenError / SummarizationTimeoutError:
                From the content processor.
        """
        text = self._validate_text(text)

        user_id = self.identity.resolve_user_id(init_data)
        decision: Optional[QuotaDecision] = None
        if user_id is not None:
            decision = self._enforce_quota(user_id)
        elif init_data:
            logger.warning("Invalid Telegram signature or missing user ID, serving anonymously")

        result, origin = await self.dedup.get_or_compute(text, self.processor.invoke)

        if user_id is not None:
            self.history.add_summary(user_id, result, text)

        logger.info(
            "Summary served (%s) for %s, %d key points",
            origin,
            f"user {user_id}" if user_id else "anonymous caller",
            len(result.key_points),
        )

        sent, error = await self._deliver(result, chat_id or user_id)
        return SummaryOutcome(
            result=result,
            cached=origin != ORIGIN_COMPUTED,
            user_id=user_id,
            quota=decision,
            telegram_sent=sent,
            telegram_error=error,
        )

    async def _deliver(self, result: SummaryResult, target: Optional[str]):
        if not target or not self.notifier.enabled:
            return False, None
        sent = await self.notifier.deliver(target, format_summary(result.summary, result.key_points))
        return sent, None if sent else "Failed to send to Telegram"

    # ── Per-user views ────────────────────────────────────────────────────

    def resolve_known_user(
        self, init_data: Optional[str] = None, user_id: Optional[str] = None
    ) -> str:
        """
        User id from an explicit `user_id`, or else from verified initData.

        Raises:
            IdentityError: Neither yields a user.
        """
        resolved = user_id or self.identity.resolve_user_id(init_data)
        if not resolved:
            raise IdentityError(message="Unable to determine user ID")
        return resolved

    def get_user_stats(self, user_id: str) -> UserStats:
        return UserStats(
            user_id=user_id,
            usage=self.quota.peek(user_id),
            history_stats=self.history.get_stats(user_id),
            recent=self.history.get_history(user_id),
        )

    def get_user_history(self, user_id: str) -> List[HistoryRecord]:
        return self.history.get_history(user_id)

    def get_user_profile(self, init_data: Optional[str]) -> UserProfile:
        """
        Telegram profile plus quota usage for the mini app header.

        Only verified initData is accepted: a bare user id carries no name
        or photo, and the profile must not be readable for arbitrary ids.

        Raises:
            IdentityError: initData missing or not verifiable.
        """
        if not init_data:
            raise IdentityError(message="initData is required", context={"field": "init_data"})
        user = self.identity.resolve_user(init_data)
        if user is None:
            raise IdentityError(message="Invalid Telegram authentication")
        return UserProfile(user=user, usage=self.quota.peek(user.id))

    # ── Explicit Telegram sends ───────────────────────────────────────────
    # Unlike the delivery after a summary, these are the whole point of the
    # request, so a failed send raises TelegramDeliveryError.

    async def send_summary(
        self,
        summary: Optional[str],
        key_points: Optional[List[str]],
        chat_id: Optional[str] = None,
        init_data: Optional[str] = None,
    ) -> str:
        """
        Forward an already produced summary to `chat_id`, else to the
        initData user. Returns the chat it was sent to. Consumes no quota.
        """
        if not summary or not summary.strip():
            raise ValidationError(message="Missing required field: summary", field="summary")
        points = [point for point in key_points or [] if point and point.strip()]
        if not points:
            raise ValidationError(message="Missing required field: key_points", field="key_points")

        target = chat_id or self.identity.resolve_user_id(init_data)
        if not target:
            raise IdentityError(message="Unable to determine Telegram user ID")

        await self._send(target, format_summary(summary, points))
        return target

    async def send_user_stats(self, user_id: str, include_history: bool = True) -> StatsDelivery:
        """
        Send the quota message to the user's chat, then optionally the
        history message. A failed quota message aborts; a failed history
        message is reported as history_sent=False.
        """
        await self._send(user_id, format_quota(self.quota.peek(user_id), self.quota.daily_limit))

        history_sent = None
        if include_history:
            records = self.history.get_history(user_id)
            history_sent = await self.notifier.deliver(
                user_id, format_history(records, self.history.max_per_user)
            )
        return StatsDelivery(user_id=user_id, quota_sent=True, history_sent=history_sent)

    async def _send(self, chat_id: str, text: str) -> None:
        if not self.notifier.enabled:
            raise TelegramDeliveryError(message="Telegram bot not configured")
        if not await self.notifier.deliver(chat_id, text):
            raise TelegramDeliveryError(chat_id=chat_id)
