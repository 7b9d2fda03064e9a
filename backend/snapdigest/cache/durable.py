"""
SnapDigest Backend — Durable In-Memory Key-Value Cache
========================================================

What:  A string-keyed in-memory table that is periodically written, whole,
       to a BlobStore, and reloaded from it at startup.
Why:   Quota counters and history are read and written on every request.
       Writing through to disk (or a database) each time would put blocking
       I/O on the request path. Instead mutations touch memory only and a
       background task flushes the table every few seconds.
How:   - get/set/delete/has/get_all: synchronous, memory only
       - a dirty flag records divergence from the last successful flush
       - a single asyncio task sleeps flush_interval_ms, then flushes if dirty
       - clear() and shutdown() flush immediately
Who:   QuotaTracker and HistoryStore each own one instance (built by CoreRuntime).

Durability Trade-off:
    Persistence is at-least-once per interval. A mutation followed by a crash
    before the next tick is lost (at most flush_interval_ms of updates). In
    exchange, request handlers never wait on storage.

Failure Semantics:
    Flush failure → logged, dirty flag stays set, retried next tick.
    Load failure  → logged as a warning, cache starts empty.
    Neither is ever raised to callers of get/set/delete.

Snapshot Format:
    UTF-8 JSON array of [key, value] pairs, one full rewrite per flush.
    Values must therefore be JSON-serializable (dicts, lists, str, numbers).

Thread Safety:
    Every read and mutation of the table and dirty flag happens under a
    threading.RLock. Under asyncio alone these sections never suspend, so
    they are already atomic; the lock keeps them atomic when the cache is
    also touched from worker threads. Flushes are serialized by an
    asyncio.Lock so two saves never overlap.
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional

from snapdigest.cache.store import BlobStore
from snapdigest.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CacheEntry(NamedTuple):
    """One stored value plus the time it was last written (epoch ms)."""

    value: Any
    last_modified: int


class DurableCache:
    """
    In-memory table with periodic whole-table persistence.

    Lifecycle:
        cache = DurableCache(store, flush_interval_ms=5000)
        await cache.start()       # load snapshot, start flush task
        cache.set("u1", {...})    # memory only, marks dirty
        ...
        await cache.shutdown()    # stop task, final forced flush

    Values are stored by reference. Callers should replace values with set()
    rather than mutating what get() returned, otherwise the change is not
    marked dirty.
    """

    def __init__(
        self,
        store: BlobStore,
        flush_interval_ms: int = 5_000,
        clock: Optional[Callable[[], int]] = None,
        name: Optional[str] = None,
    ):
        """
        Args:
            store: Where snapshots are loaded from and saved to.
            flush_interval_ms: Delay between flush attempts.
            clock: Epoch-millisecond clock; injectable for tests.
            name: Label for log lines (defaults to the store's name).
        """
        self.store = store
        self.flush_interval_ms = flush_interval_ms
        self.name = name or store.name
        self._clock = clock or epoch_ms

        self._entries: Dict[str, CacheEntry] = {}
        self._dirty = False
        self._lock = threading.RLock()
        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._started = False
        self._last_flush_at: Optional[int] = None
        self._last_flush_error: Optional[str] = None

    # ── Synchronous in-memory API ─────────────────────────────────────────

    def get(self, key: str) -> Any:
        """Return the value for `key`, or None when absent."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def set(self, key: str, value: Any) -> None:
        """Insert or overwrite `key` and mark the table dirty."""
        with self._lock:
            self._entries[key] = CacheEntry(value=value, last_modified=self._clock())
            self._dirty = True

    def delete(self, key: str) -> None:
        """Remove `key` if present and mark the table dirty."""
        with self._lock:
            self._entries.pop(key, None)
            self._dirty = True

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get_all(self) -> Dict[str, Any]:
        """Snapshot of current contents. Safe to iterate while others mutate."""
        with self._lock:
            return {key: entry.value for key, entry in self._entries.items()}

    def last_modified(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.last_modified if entry is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def started(self) -> bool:
        return self._started

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Load the stored snapshot, then begin periodic flushing.

        Must complete before the cache serves requests. Called once by
        CoreRuntime.start(); calling it twice is a programming error.
        """
        if self._started:
            raise RuntimeError(f"Cache '{self.name}' is already started")

        await self._load()
        self._flush_task = asyncio.create_task(
            self._flush_loop(), name=f"cache-flush:{self.name}"
        )
        self._started = True
        logger.info(
            "Cache '%s' started with %d entries (flush every %dms)",
            self.name,
            len(self),
            self.flush_interval_ms,
        )

    async def shutdown(self) -> None:
        """
        Stop the flush task and force one final flush.

        The final flush runs even if the dirty flag is clear, so the store
        always ends up matching memory on graceful termination.
        """
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        await self.flush(force=True)
        self._started = False
        logger.info("Cache '%s' shut down with %d entries", self.name, len(self))

    async def clear(self) -> None:
        """Empty the table and flush immediately, waiting for the write."""
        with self._lock:
            self._entries.clear()
            self._dirty = True
        await self.flush()

    # ── Persistence ───────────────────────────────────────────────────────

    async def flush(self, force: bool = False) -> bool:
        """
        Write the whole table to the store if dirty (or if forced).

        Returns:
            True when a snapshot was written, False when skipped or failed.

        The dirty flag is cleared when the snapshot is taken, not after the
        write. A set() that lands while the save is awaiting marks the table
        dirty again, so that change goes out with the next flush. On failure
        the flag is restored.
        """
        async with self._flush_lock:
            with self._lock:
                if not self._dirty and not force:
                    return False
                records = [[key, entry.value] for key, entry in self._entries.items()]
                self._dirty = False

            try:
                payload = self.serialize(records)
                await self.store.save(payload)
            except asyncio.CancelledError:
                with self._lock:
                    self._dirty = True
                raise
            except PersistenceError as e:
                with self._lock:
                    self._dirty = True
                self._last_flush_error = e.message
                logger.error(
                    "Cache '%s' flush failed, will retry: %s | Context: %s",
                    self.name,
                    e.message,
                    e.context,
                )
                return False
            except Exception as e:
                # Unserializable value or a store bug; keep the loop alive
                with self._lock:
                    self._dirty = True
                self._last_flush_error = str(e)
                logger.error(
                    "Cache '%s' flush failed unexpectedly: %s",
                    self.name,
                    str(e),
                    exc_info=True,
                )
                return False

            self._last_flush_at = self._clock()
            self._last_flush_error = None
            logger.debug("Cache '%s' synced %d entries", self.name, len(records))
            return True

    async def _flush_loop(self) -> None:
        interval = self.flush_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            await self.flush()

    async def _load(self) -> None:
        """Populate memory from the store; any failure means start empty."""
        try:
            payload = await self.store.load()
        except PersistenceError as e:
            logger.warning(
                "Cache '%s' could not load snapshot, starting empty: %s",
                self.name,
                e.message,
            )
            return

        if payload is None:
            logger.info("Cache '%s' has no stored snapshot, starting empty", self.name)
            return

        try:
            records = self.deserialize(payload)
        except ValueError as e:
            logger.warning(
                "Cache '%s' snapshot is corrupt, starting empty: %s", self.name, str(e)
            )
            return

        now = self._clock()
        with self._lock:
            for key, value in records:
                self._entries[key] = CacheEntry(value=value, last_modified=now)
        logger.info("Cache '%s' loaded %d entries from storage", self.name, len(records))

    @staticmethod
    def serialize(records: list) -> bytes:
        """Encode [[key, value], ...] as UTF-8 JSON."""
        return json.dumps(records, ensure_ascii=False, indent=2).encode("utf-8")

    @staticmethod
    def deserialize(payload: bytes) -> list:
        """
        Decode a snapshot written by serialize().

        Raises:
            ValueError: payload is not JSON, or not a list of [str, value] pairs.
        """
        records = json.loads(payload.decode("utf-8"))
        if not isinstance(records, list):
            raise ValueError("snapshot root is not a list")
        for record in records:
            if not (isinstance(record, list) and len(record) == 2 and isinstance(record[0], str)):
                raise ValueError(f"malformed record: {record!r:.80}")
        return records

    # ── Introspection ─────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        """Operational snapshot for the health endpoint."""
        with self._lock:
            return {
                "name": self.name,
                "entries": len(self._entries),
                "dirty": self._dirty,
                "last_flush_at": self._last_flush_at,
                "last_flush_error": self._last_flush_error,
            }
