"""
SnapDigest Backend — Response Deduplication Cache
===================================================

What:  Coalesces identical summarization requests into a single upstream
       call and serves recent results from memory.
Why:   The same text is often submitted twice in quick succession (double
       taps, retries, the Telegram client and the web page racing). Each
       duplicate would otherwise cost a full LLM call.
How:   Content is fingerprinted (SHA-256 of the normalized text). Two maps:
         _in_flight: fingerprint → asyncio.Task of the running computation
         _resolved:  fingerprint → result + timestamps, valid for ttl_ms
Who:   SummaryService (via get_or_compute), health route (stats), CoreRuntime
       (start/shutdown of the sweep task).

Central Guarantee:
    For a fingerprint, at most one computation is in flight at any instant.
    Every caller arriving while it runs awaits the same task and observes
    the same outcome, success or failure.

    The check ("is anything cached or running?") and the insert ("this task
    is now running") happen in one critical section with no await between
    them, guarded by a lock. Two callers cannot both conclude they are first.

Failure and Liveness:
    When the task finishes, a done-callback removes the in-flight entry
    whatever the outcome. Only a successful result is moved to _resolved.
    A failed or timed-out computation therefore leaves the fingerprint
    retryable by the very next request; nothing stays stuck.

Not Durable:
    Entries are a cost optimization, not state anyone depends on. They are
    rebuilt from scratch after a restart.
"""

import asyncio
import hashlib
import json
import logging
import threading
import unicodedata
from functools import partial
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Tuple

from pydantic import BaseModel

from snapdigest.cache.durable import epoch_ms
from snapdigest.exceptions import InFlightConflictError

logger = logging.getLogger(__name__)

# Where get_or_compute() found its answer
ORIGIN_CACHED = "cached"
ORIGIN_JOINED = "joined"
ORIGIN_COMPUTED = "computed"


class ResolvedEntry(NamedTuple):
    """A finished computation kept for ttl_ms after resolved_at."""

    result: Any
    created_at: int
    resolved_at: int


class DeduplicationCache:
    """
    In-memory request coalescing and short-lived result cache.

    Args:
        ttl_ms: Lifetime of a resolved result (default 1 hour).
        sweep_interval_ms: Cadence of the background expiry sweep (default 10 min).
        clock: Epoch-millisecond clock; injectable for tests.

    Concurrency:
        In-flight handles are asyncio tasks and belong to the event loop that
        created them. The registration lock makes the check-and-insert atomic
        even if several threads call into the cache.
    """

    def __init__(
        self,
        ttl_ms: int = 3_600_000,
        sweep_interval_ms: int = 600_000,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.ttl_ms = ttl_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._clock = clock or epoch_ms

        self._in_flight: Dict[str, asyncio.Future] = {}
        self._in_flight_started: Dict[str, int] = {}
        self._resolved: Dict[str, ResolvedEntry] = {}
        self._lock = threading.RLock()
        self._sweep_task: Optional[asyncio.Task] = None

    # ── Fingerprinting ────────────────────────────────────────────────────

    @staticmethod
    def normalize(content: str) -> str:
        """NFC-normalize and strip surrounding whitespace."""
        return unicodedata.normalize("NFC", content).strip()

    @classmethod
    def fingerprint(cls, content: str) -> str:
        """SHA-256 hex digest of the normalized content."""
        return hashlib.sha256(cls.normalize(content).encode("utf-8")).hexdigest()

    # ── Lookups ───────────────────────────────────────────────────────────

    def _live_entry(self, fingerprint: str) -> Optional[ResolvedEntry]:
        """The resolved entry if still within ttl_ms; an expired one is evicted."""
        with self._lock:
            entry = self._resolved.get(fingerprint)
            if entry is None:
                return None
            if self._clock() - entry.resolved_at > self.ttl_ms:
                del self._resolved[fingerprint]
                return None
            return entry

    def lookup_resolved(self, fingerprint: str) -> Any:
        """
        Cached result if resolved within the last ttl_ms, else None.

        A computation that legitimately resolved to None is indistinguishable
        here; get_or_compute() looks at the entry itself and serves it.
        """
        entry = self._live_entry(fingerprint)
        return entry.result if entry is not None else None

    def lookup_in_flight(self, fingerprint: str) -> Optional[asyncio.Future]:
        """Handle to the running computation for `fingerprint`, if any."""
        with self._lock:
            return self._in_flight.get(fingerprint)

    # ── Registration ──────────────────────────────────────────────────────

    def register_in_flight(
        self, fingerprint: str, computation: Awaitable[Any]
    ) -> asyncio.Future:
        """
        Record that a computation for `fingerprint` has started.

        Atomic insert-if-absent: if one is already registered the new
        computation is discarded and InFlightConflictError is raised. Callers
        that may race should use get_or_compute(), or lookup_in_flight()
        first inside their own critical section.

        Returns:
            The task wrapping `computation`. Await it (ideally through
            asyncio.shield) to receive the result.
        """
        with self._lock:
            if fingerprint in self._in_flight:
                if asyncio.iscoroutine(computation):
                    computation.close()
                raise InFlightConflictError(fingerprint)

            task = asyncio.ensure_future(computation)
            self._in_flight[fingerprint] = task
            self._in_flight_started[fingerprint] = self._clock()
            task.add_done_callback(partial(self._on_computation_done, fingerprint))
            return task

    def _on_computation_done(self, fingerprint: str, task: asyncio.Future) -> None:
        """Clear the in-flight slot; keep the result only on success."""
        with self._lock:
            started_at = self._clock()
            # After clear() the slot may belong to a newer task
            if self._in_flight.get(fingerprint) is task:
                del self._in_flight[fingerprint]
                started_at = self._in_flight_started.pop(fingerprint, started_at)

            if task.cancelled():
                logger.warning("Computation for %s was cancelled", fingerprint[:12])
                return

            error = task.exception()
            if error is not None:
                logger.warning(
                    "Computation for %s failed (%s); fingerprint is retryable",
                    fingerprint[:12],
                    type(error).__name__,
                )
                return

            self._resolved[fingerprint] = ResolvedEntry(
                result=task.result(),
                created_at=started_at,
                resolved_at=self._clock(),
            )

    async def get_or_compute(
        self,
        content: str,
        compute: Callable[[str], Awaitable[Any]],
    ) -> Tuple[Any, str]:
        """
        Return the result for `content`, computing it at most once.

        Args:
            content: Raw input; normalized before hashing and before `compute`.
            compute: Called with the normalized content only when no cached
                     result and no in-flight computation exist.

        Returns:
            (result, origin) where origin is "cached", "joined" or "computed".

        Raises:
            Whatever `compute` raised, to every caller sharing the computation.
        """
        fingerprint = self.fingerprint(content)

        with self._lock:
            cached = self._live_entry(fingerprint)
            if cached is not None:
                logger.info("Dedup cache hit for %s", fingerprint[:12])
                return cached.result, ORIGIN_CACHED

            pending = self._in_flight.get(fingerprint)
            if pending is None:
                pending = self.register_in_flight(fingerprint, compute(self.normalize(content)))
                origin = ORIGIN_COMPUTED
            else:
                logger.info("Joining in-flight computation for %s", fingerprint[:12])
                origin = ORIGIN_JOINED

        # Shield: a caller that disconnects must not cancel the shared task
        result = await asyncio.shield(pending)
        return result, origin

    def cache_response(self, content: str, result: Any) -> None:
        """Store a result directly, as if a computation had just resolved."""
        now = self._clock()
        with self._lock:
            self._resolved[self.fingerprint(content)] = ResolvedEntry(
                result=result, created_at=now, resolved_at=now
            )

    # ── Housekeeping ──────────────────────────────────────────────────────

    def sweep_expired(self) -> int:
        """Remove resolved entries older than ttl_ms. Returns how many."""
        with self._lock:
            now = self._clock()
            expired = [
                fp for fp, entry in self._resolved.items()
                if now - entry.resolved_at > self.ttl_ms
            ]
            for fp in expired:
                del self._resolved[fp]

        if expired:
            logger.info("Dedup sweep removed %d expired entries", len(expired))
            logger.debug("Dedup stats after sweep: %s", self.stats())
        return len(expired)

    def clear(self) -> None:
        """
        Forget everything.

        Running computations are not cancelled; their callers still get
        results, but new callers will start fresh computations.
        """
        with self._lock:
            self._in_flight.clear()
            self._in_flight_started.clear()
            self._resolved.clear()

    def stats(self) -> Dict[str, int]:
        """in_flight count, cached count, and approximate JSON size of results."""
        with self._lock:
            results = [entry.result for entry in self._resolved.values()]
            in_flight = len(self._in_flight)

        total_size = 0
        for result in results:
            if isinstance(result, BaseModel):
                total_size += len(result.model_dump_json())
            else:
                total_size += len(json.dumps(result, default=str))

        return {"in_flight": in_flight, "cached": len(results), "total_size": total_size}

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Begin the periodic expiry sweep."""
        if self._sweep_task is not None:
            raise RuntimeError("Deduplication sweep is already running")
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="dedup-sweep")
        logger.info(
            "Deduplication cache started (ttl=%dms, sweep every %dms)",
            self.ttl_ms,
            self.sweep_interval_ms,
        )

    async def shutdown(self) -> None:
        """Stop the sweep task. In-flight computations are left to finish."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Dedup sweep task had crashed: %s", str(e), exc_info=True)
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        interval = self.sweep_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error("Dedup sweep failed, retrying next tick: %s", str(e), exc_info=True)
