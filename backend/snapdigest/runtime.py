"""
SnapDigest Backend — Core Runtime (Composition Root)
======================================================

What:  Builds and owns every long-lived object: the two durable caches,
       quota tracker, history store, dedup cache, collaborators, and the
       SummaryService that ties them together.
Why:   Nothing starts at import time. The FastAPI lifespan (or a test)
       creates one runtime, starts it, and shuts it down, so background
       tasks and final flushes are tied to an explicit lifecycle.
Who:   main.py lifespan, route dependency get_runtime(), tests.

Startup Order:
    1. (database backend) create tables on SQLite URLs
    2. load both caches and start their flush loops
    3. start the dedup sweep and the quota housekeeping sweep

Shutdown Order (reverse):
    sweeps stop → caches flush one last time → HTTP client closes →
    database engine disposed
"""

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from snapdigest import __version__
from snapdigest.cache.durable import DurableCache, epoch_ms
from snapdigest.cache.store import BlobStore, FileBlobStore
from snapdigest.config import Settings
from snapdigest.services.dedup_service import DeduplicationCache
from snapdigest.services.history_service import HistoryStore
from snapdigest.services.identity_service import TelegramIdentityResolver
from snapdigest.services.llm_base import ContentProcessor
from snapdigest.services.quota_service import QuotaTracker
from snapdigest.services.summary_service import SummaryService
from snapdigest.services.telegram_service import TelegramNotifier

logger = logging.getLogger(__name__)


class CoreRuntime:
    """
    Holds the wired object graph and its background tasks.

    Build with CoreRuntime.from_settings(settings). Tests may pass their own
    stores, processor, notifier and clock.
    """

    def __init__(
        self,
        settings: Settings,
        quota_store: BlobStore,
        history_store: BlobStore,
        processor: ContentProcessor,
        notifier: Optional[TelegramNotifier] = None,
        identity: Optional[TelegramIdentityResolver] = None,
        clock: Optional[Callable[[], int]] = None,
        engine: Optional[Any] = None,
    ):
        self.settings = settings
        self.engine = engine
        clock = clock or epoch_ms

        self.quota_cache = DurableCache(
            quota_store, flush_interval_ms=settings.flush_interval_ms, clock=clock
        )
        self.history_cache = DurableCache(
            history_store, flush_interval_ms=settings.flush_interval_ms, clock=clock
        )

        self.quota = QuotaTracker(
            self.quota_cache,
            daily_limit=settings.daily_limit,
            window_length_ms=settings.window_length_ms,
            clock=clock,
        )
        self.history = HistoryStore(
            self.history_cache,
            max_per_user=settings.max_history_per_user,
            clock=clock,
        )
        self.dedup = DeduplicationCache(
            ttl_ms=settings.dedup_ttl_ms,
            sweep_interval_ms=settings.dedup_sweep_interval_ms,
            clock=clock,
        )

        self.processor = processor
        self.identity = identity or TelegramIdentityResolver(settings.telegram_bot_token)
        self.notifier = notifier or TelegramNotifier(
            bot_token=settings.telegram_bot_token,
            api_base=settings.telegram_api_base,
            max_attempts=settings.retry_max_attempts,
        )

        self.summaries = SummaryService(
            quota=self.quota,
            dedup=self.dedup,
            history=self.history,
            processor=self.processor,
            identity=self.identity,
            notifier=self.notifier,
            max_text_length=settings.max_text_length,
            clock=clock,
        )

        self._quota_sweep_task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        processor: Optional[ContentProcessor] = None,
        notifier: Optional[TelegramNotifier] = None,
    ) -> "CoreRuntime":
        """
        Production wiring: stores chosen by settings.cache_backend, Gemini
        as the processor unless one is supplied.
        """
        engine = None
        if settings.cache_backend == "database":
            from snapdigest.cache.sql_store import SqlBlobStore
            from snapdigest.database import build_engine, build_session_factory

            engine = build_engine(settings)
            session_factory = build_session_factory(engine)
            quota_store: BlobStore = SqlBlobStore(session_factory, settings.quota_store_name)
            history_store: BlobStore = SqlBlobStore(session_factory, settings.history_store_name)
        else:
            quota_store = FileBlobStore(
                os.path.join(settings.cache_dir, f"{settings.quota_store_name}.json")
            )
            history_store = FileBlobStore(
                os.path.join(settings.cache_dir, f"{settings.history_store_name}.json")
            )

        if processor is None:
            from snapdigest.services.gemini_service import GeminiSummarizer

            processor = GeminiSummarizer(settings)

        return cls(
            settings=settings,
            quota_store=quota_store,
            history_store=history_store,
            processor=processor,
            notifier=notifier,
            engine=engine,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._started_at is not None

    async def start(self) -> None:
        if self.started:
            raise RuntimeError("Runtime is already started")

        if self.engine is not None and self.settings.database_url.startswith("sqlite"):
            from snapdigest.database import create_tables

            await create_tables(self.engine)

        await self.quota_cache.start()
        await self.history_cache.start()
        await self.dedup.start()
        self._quota_sweep_task = asyncio.create_task(
            self._quota_sweep_loop(), name="quota-sweep"
        )
        self._started_at = time.time()
        logger.info(
            "SnapDigest runtime started (backend=%s, daily_limit=%d)",
            self.settings.cache_backend,
            self.settings.daily_limit,
        )

    async def shutdown(self) -> None:
        """
        Stop background work and persist everything. Safe to call twice.

        Each stage runs even if an earlier one failed: a crashed sweep task
        must not cost the caches their final flush.
        """
        if self._quota_sweep_task is not None:
            self._quota_sweep_task.cancel()
            try:
                await self._quota_sweep_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("Quota sweep task had crashed: %s", str(e), exc_info=True)
            self._quota_sweep_task = None

        await self._shutdown_stage("dedup sweep", self.dedup.shutdown())
        await self._shutdown_stage("quota cache", self.quota_cache.shutdown())
        await self._shutdown_stage("history cache", self.history_cache.shutdown())
        await self._shutdown_stage("telegram client", self.notifier.aclose())

        if self.engine is not None:
            await self._shutdown_stage("database engine", self.engine.dispose())

        self._started_at = None
        logger.info("SnapDigest runtime stopped")

    @staticmethod
    async def _shutdown_stage(name: str, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error("Shutdown stage '%s' failed: %s", name, str(e), exc_info=True)

    async def _quota_sweep_loop(self) -> None:
        interval = self.settings.quota_sweep_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.quota.sweep_expired()
            except Exception as e:
                logger.error("Quota sweep failed, retrying next tick: %s", str(e), exc_info=True)

    # ── Introspection ─────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        """Snapshot for the health endpoint."""
        breaker = getattr(self.processor, "circuit_breaker", None)
        return {
            "version": __version__,
            "uptime_seconds": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "caches": {
                "quotas": self.quota_cache.stats(),
                "history": self.history_cache.stats(),
            },
            "dedup": self.dedup.stats(),
            "circuit_breaker": breaker.state if breaker is not None else None,
        }
