"""
SnapDigest Backend — Per-User Summary History
===============================================

What:  Keeps the most recent summaries of each identified user.
Why:   The Telegram mini app shows "your last 10 summaries" and the stats
       endpoint reports history counts.
How:   One UserHistory value per user in its own DurableCache (second named
       store, same persistence pattern as quotas). New records are inserted
       at the front; the list is truncated to max_per_user.
Who:   SummaryService (add_summary), telegram routes (get_history, get_stats).
"""

import logging
import secrets
import threading
from typing import Callable, List, Optional

from pydantic import ValidationError as RecordValidationError

from snapdigest.cache.durable import DurableCache, epoch_ms
from snapdigest.models.records import (
    HistoryRecord,
    HistoryStats,
    SummaryResult,
    UserHistory,
    ms_to_iso,
)

logger = logging.getLogger(__name__)

# How much of the input text is kept alongside each summary
ORIGINAL_TEXT_PREVIEW = 200


class HistoryStore:
    """
    Newest-first bounded history per user.

    Invariant: at most max_per_user records per user; the oldest is evicted
    when a new one pushes the list over the cap.
    """

    def __init__(
        self,
        cache: DurableCache,
        max_per_user: int = 10,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.cache = cache
        self.max_per_user = max_per_user
        self._clock = clock or epoch_ms
        self._lock = threading.Lock()

    def _load(self, user_id: str) -> Optional[UserHistory]:
        """Stored history for `user_id`; an unreadable value counts as none."""
        raw = self.cache.get(user_id)
        if raw is None:
            return None
        try:
            return UserHistory.model_validate(raw)
        except RecordValidationError as e:
            logger.warning(
                "Ignoring unreadable history for user %s: %d validation errors",
                user_id,
                e.error_count(),
            )
            return None

    def _generate_id(self, now: int) -> str:
        return f"{now}-{secrets.token_hex(4)}"

    def add_summary(
        self, user_id: str, result: SummaryResult, original_text: str
    ) -> HistoryRecord:
        """Prepend a record for `result` and enforce the per-user cap."""
        with self._lock:
            now = self._clock()
            record = HistoryRecord(
                id=self._generate_id(now),
                user_id=user_id,
                summary=result.summary,
                key_points=list(result.key_points),
                original_text=original_text[:ORIGINAL_TEXT_PREVIEW],
                created_at=now,
            )

            history = self._load(user_id) or UserHistory(user_id=user_id, last_updated=now)
            summaries = [record] + history.summaries
            history = UserHistory(
                user_id=user_id,
                summaries=summaries[: self.max_per_user],
                last_updated=now,
            )
            self.cache.set(user_id, history.model_dump())

        logger.debug(
            "Recorded summary %s for user %s (%d kept)",
            record.id,
            user_id,
            len(history.summaries),
        )
        return record

    def get_history(self, user_id: str) -> List[HistoryRecord]:
        """The user's summaries, newest first. Empty list for unknown users."""
        history = self._load(user_id)
        return history.summaries if history else []

    def get_summary(self, user_id: str, summary_id: str) -> Optional[HistoryRecord]:
        for record in self.get_history(user_id):
            if record.id == summary_id:
                return record
        return None

    def get_stats(self, user_id: str) -> HistoryStats:
        summaries = self.get_history(user_id)
        if not summaries:
            return HistoryStats(total=0)
        return HistoryStats(
            total=len(summaries),
            newest=ms_to_iso(summaries[0].created_at),
            oldest=ms_to_iso(summaries[-1].created_at),
        )

    def clear_user(self, user_id: str) -> None:
        """Administrative: forget one user's history."""
        with self._lock:
            self.cache.delete(user_id)
