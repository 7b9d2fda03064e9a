"""
SnapDigest Backend — Per-User Quota Tracker
=============================================

What:  Rolling-window usage counter per user identity, persisted through a
       DurableCache.
Why:   Each summarization costs an LLM call. Identified users get
       `daily_limit` summarizations per window; anonymous requests are not
       tracked at all (see SummaryService).
How:   One QuotaRecord per user: {user_id, count, reset_at}. Windows roll
       lazily: whichever call first observes now >= reset_at starts a fresh
       window. No timer is needed for correctness.
Who:   SummaryService (gate before summarizing), telegram routes (peek),
       admin route (reset), CoreRuntime housekeeping (sweep_expired).

Rolling Window:
    Each user's window starts at their first request of a cycle and lasts
    window_length_ms. It is NOT aligned to midnight and is independent per
    user.

Atomicity:
    check_and_consume() is one read-modify-write under the tracker's lock.
    Two concurrent calls that both see an expired window therefore cannot
    both start a fresh window and both count from zero: the second one sees
    the record the first one wrote.

Example (daily_limit=10):
    call 1  → allowed, remaining 9
    ...
    call 10 → allowed, remaining 0
    call 11 → rejected, remaining 0, count stays 10
"""

import logging
import threading
from typing import Any, Callable, Optional

from pydantic import ValidationError as RecordValidationError

from snapdigest.cache.durable import DurableCache, epoch_ms
from snapdigest.models.records import QuotaDecision, QuotaRecord, QuotaUsage

logger = logging.getLogger(__name__)


class QuotaTracker:
    """
    Counting rate limit over a per-user rolling window.

    Args:
        cache: DurableCache holding QuotaRecord dicts keyed by user_id.
        daily_limit: Permitted consumptions per window.
        window_length_ms: Window length (default 24h).
        clock: Epoch-millisecond clock; injectable for tests.
    """

    def __init__(
        self,
        cache: DurableCache,
        daily_limit: int = 10,
        window_length_ms: int = 86_400_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.cache = cache
        self.daily_limit = daily_limit
        self.window_length_ms = window_length_ms
        self._clock = clock or epoch_ms
        self._lock = threading.Lock()

    @staticmethod
    def _parse(user_id: str, raw: Any) -> Optional[QuotaRecord]:
        """
        Typed view of a stored value; None when it is not a QuotaRecord.

        A snapshot written by another version (or edited by hand) may hold
        values that do not validate. They read as "no record": the user gets
        a fresh window and the next write or sweep replaces the bad value.
        """
        try:
            return QuotaRecord.model_validate(raw)
        except RecordValidationError as e:
            logger.warning(
                "Ignoring unreadable quota record for user %s: %d validation errors",
                user_id,
                e.error_count(),
            )
            return None

    def _current_record(self, user_id: str, now: int) -> Optional[QuotaRecord]:
        """The stored record if its window is still open, else None."""
        raw = self.cache.get(user_id)
        if raw is None:
            return None
        record = self._parse(user_id, raw)
        if record is None or now >= record.reset_at:
            return None
        return record

    def check_and_consume(self, user_id: str) -> QuotaDecision:
        """
        Consume one unit of quota for `user_id` if any remains.

        Steps:
            1. Read the record; if absent or expired start a fresh window
               (count=0, reset_at=now+window_length_ms)
            2. remaining = max(0, limit - count)
            3. remaining > 0 → count += 1, persist, allowed=True with
               remaining computed after the increment
            4. otherwise → allowed=False, remaining=0, nothing written
        """
        with self._lock:
            now = self._clock()
            record = self._current_record(user_id, now)
            if record is None:
                record = QuotaRecord(
                    user_id=user_id,
                    count=0,
                    reset_at=now + self.window_length_ms,
                )

            remaining = max(0, self.daily_limit - record.count)
            if remaining > 0:
                record = record.model_copy(update={"count": record.count + 1})
                self.cache.set(user_id, record.model_dump())
                return QuotaDecision(
                    allowed=True,
                    remaining=self.daily_limit - record.count,
                    reset_at=record.reset_at,
                )

        logger.info(
            "Quota exhausted for user %s (%d/%d), resets at %d",
            user_id,
            record.count,
            self.daily_limit,
            record.reset_at,
        )
        return QuotaDecision(allowed=False, remaining=0, reset_at=record.reset_at)

    def peek(self, user_id: str) -> QuotaUsage:
        """
        Current usage without consuming anything.

        An absent or expired record reads as a fresh window starting now.
        Nothing is written, not even the rollover.
        """
        now = self._clock()
        record = self._current_record(user_id, now)
        if record is None:
            return QuotaUsage(
                used=0,
                remaining=self.daily_limit,
                reset_at=now + self.window_length_ms,
            )
        return QuotaUsage(
            used=record.count,
            remaining=max(0, self.daily_limit - record.count),
            reset_at=record.reset_at,
        )

    def reset(self, user_id: str) -> None:
        """Administrative reset: the next check starts a fresh window."""
        with self._lock:
            self.cache.delete(user_id)
        logger.info("Quota reset for user %s", user_id)

    def sweep_expired(self) -> int:
        """
        Delete every record whose window has closed.

        Housekeeping only: expired records are already ignored by
        check_and_consume() and peek(). This keeps the snapshot small.
        Unreadable records are dropped along with the expired ones.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            for user_id, raw in self.cache.get_all().items():
                record = self._parse(user_id, raw)
                if record is None or now >= record.reset_at:
                    self.cache.delete(user_id)
                    removed += 1

        if removed:
            logger.info("Cleared %d expired quota records", removed)
        return removed
