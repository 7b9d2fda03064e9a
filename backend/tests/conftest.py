"""
SnapDigest Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   The engine components take injectable clocks and stores; these
       fixtures provide controllable versions of both, plus a started
       runtime and an HTTP client for route tests.

Fixture Hierarchy:
    Plain objects:
    ├── clock: FakeClock (epoch ms, advanced by hand)
    ├── memory_store: MemoryBlobStore (in-memory BlobStore with failure switch)
    ├── test_settings: Settings tuned for fast tests
    └── processor: FakeProcessor (counts calls, optional gate)

    Async (pytest_asyncio):
    ├── runtime: started CoreRuntime on memory stores, shut down afterwards
    └── test_client: HTTPX AsyncClient over ASGITransport for that runtime
"""

import asyncio
import os
import tempfile
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings for testing BEFORE any snapdigest imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["ADMIN_TOKEN"] = ""
os.environ["CACHE_DIR"] = tempfile.mkdtemp(prefix="snapdigest_test_")
os.environ["LOG_LEVEL"] = "WARNING"

from snapdigest.cache.store import BlobStore  # noqa: E402
from snapdigest.config import Settings  # noqa: E402
from snapdigest.exceptions import PersistenceError  # noqa: E402
from snapdigest.models.records import SummaryResult  # noqa: E402
from snapdigest.services.llm_base import ContentProcessor  # noqa: E402
from snapdigest.services.telegram_service import TelegramNotifier  # noqa: E402

# 2026-01-01T00:00:00Z
START_MS = 1_767_225_600_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class MemoryBlobStore(BlobStore):
    """BlobStore keeping the blob in memory; `fail_saves` simulates outages."""

    def __init__(self, data: Optional[bytes] = None, name: str = "memory"):
        self.data = data
        self.name = name
        self.saves: List[bytes] = []
        self.fail_saves = False
        self.fail_loads = False

    async def load(self) -> Optional[bytes]:
        if self.fail_loads:
            raise PersistenceError(message="simulated load failure")
        return self.data

    async def save(self, data: bytes) -> None:
        if self.fail_saves:
            raise PersistenceError(message="simulated save failure")
        self.data = data
        self.saves.append(data)


class FakeProcessor(ContentProcessor):
    """
    ContentProcessor returning a canned summary.

    Set `gate` to an asyncio.Event to hold every call until it is set;
    set `error` to make calls raise it.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def invoke(self, normalized_input: str) -> SummaryResult:
        self.calls.append(normalized_input)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SummaryResult(
            summary=f"Summary of {normalized_input[:20]}",
            key_points=["first point", "second point", "third point"],
        )

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryBlobStore()


@pytest.fixture
def blob_store_factory():
    """The MemoryBlobStore class, for tests that need several or preloaded stores."""
    return MemoryBlobStore


@pytest.fixture
def test_settings(tmp_path):
    """Settings with a private cache dir and no retry waits worth noticing."""
    return Settings(
        cache_dir=str(tmp_path),
        flush_interval_ms=60_000,
        daily_limit=10,
        retry_max_attempts=1,
        telegram_bot_token="",
        admin_token="",
        rate_limit_requests=1000,
    )


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest_asyncio.fixture
async def runtime(test_settings, processor, clock):
    """A started CoreRuntime on in-memory stores."""
    from snapdigest.runtime import CoreRuntime

    rt = CoreRuntime(
        settings=test_settings,
        quota_store=MemoryBlobStore(name="quotas"),
        history_store=MemoryBlobStore(name="history"),
        processor=processor,
        notifier=TelegramNotifier(bot_token=""),
        clock=clock,
    )
    await rt.start()
    yield rt
    await rt.shutdown()


@pytest_asyncio.fixture
async def test_client(runtime):
    """
    HTTPX AsyncClient talking to an app built around `runtime`.

    ASGITransport does not run the lifespan; the runtime fixture owns
    start and shutdown.
    """
    from snapdigest.main import create_app

    app = create_app(runtime=runtime)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
