"""
SnapDigest Backend — DurableCache and Blob Store Tests
========================================================

What we test:
    ✅ Reads see writes immediately, before any flush
    ✅ Flush then reload restores structurally equal values
    ✅ Two flushes without writes produce identical bytes
    ✅ Load failures and corrupt snapshots start empty
    ✅ Save failures keep the cache dirty and retry next time
    ✅ Shutdown forces a final flush
    ✅ FileBlobStore writes atomically and round-trips bytes
"""

import asyncio
import json

import pytest

from snapdigest.cache.durable import DurableCache
from snapdigest.cache.store import FileBlobStore


class TestInMemoryApi:
    """Synchronous reads and writes against memory."""

    def test_get_returns_value_before_flush(self, memory_store, clock):
        """A value is readable right after set(), with nothing written to the store."""
        cache = DurableCache(memory_store, clock=clock)
        value = {"user_id": "u1", "count": 3, "reset_at": 123}

        cache.set("u1", value)

        assert cache.get("u1") == value
        assert memory_store.saves == []
        assert cache.dirty is True

    def test_missing_key_reads_none(self, memory_store):
        """Absent keys read as None."""
        cache = DurableCache(memory_store)
        assert cache.get("nobody") is None
        assert cache.has("nobody") is False

    def test_delete_removes_and_marks_dirty(self, memory_store):
        """delete() drops the key and marks the table dirty."""
        cache = DurableCache(memory_store)
        cache.set("a", 1)
        cache._dirty = False

        cache.delete("a")

        assert cache.has("a") is False
        assert cache.dirty is True

    def test_get_all_is_a_snapshot(self, memory_store):
        """Mutating the cache after get_all() does not change the returned dict."""
        cache = DurableCache(memory_store)
        cache.set("a", 1)
        snapshot = cache.get_all()

        cache.set("b", 2)

        assert snapshot == {"a": 1}
        assert len(cache) == 2

    def test_last_modified_uses_clock(self, memory_store, clock):
        """Each set() stamps the entry with the injected clock."""
        cache = DurableCache(memory_store, clock=clock)
        cache.set("a", 1)
        first = cache.last_modified("a")
        clock.advance(500)
        cache.set("a", 2)

        assert cache.last_modified("a") == first + 500


class TestFlushAndReload:
    """Persistence through a BlobStore."""

    @pytest.mark.asyncio
    async def test_round_trip_through_store(self, memory_store):
        """Flush then load into a fresh cache returns structurally equal values."""
        value = {"summaries": [{"id": "1", "key_points": ["a", "b"]}], "n": 2.5, "ok": True}
        cache = DurableCache(memory_store)
        cache.set("u1", value)
        cache.set("ключ", "значение")

        assert await cache.flush() is True

        reloaded = DurableCache(memory_store)
        await reloaded.start()
        try:
            assert reloaded.get("u1") == value
            assert reloaded.get("ключ") == "значение"
        finally:
            await reloaded.shutdown()

    @pytest.mark.asyncio
    async def test_forced_flush_twice_is_identical(self, memory_store):
        """Two flushes with no intervening set() write identical bytes."""
        cache = DurableCache(memory_store)
        cache.set("a", {"x": 1})
        cache.set("b", [1, 2, 3])

        await cache.flush(force=True)
        await cache.flush(force=True)

        assert len(memory_store.saves) == 2
        assert memory_store.saves[0] == memory_store.saves[1]

    @pytest.mark.asyncio
    async def test_clean_cache_skips_unforced_flush(self, memory_store):
        """A non-dirty cache does not touch the store."""
        cache = DurableCache(memory_store)
        cache.set("a", 1)
        await cache.flush()

        assert await cache.flush() is False
        assert len(memory_store.saves) == 1

    @pytest.mark.asyncio
    async def test_snapshot_format_is_pairs(self, memory_store):
        """The snapshot is a JSON array of [key, value] pairs."""
        cache = DurableCache(memory_store)
        cache.set("u1", {"count": 1})
        await cache.flush()

        assert json.loads(memory_store.data.decode("utf-8")) == [["u1", {"count": 1}]]

    @pytest.mark.asyncio
    async def test_failed_save_keeps_dirty_and_retries(self, memory_store):
        """A failed save leaves the cache dirty; the next flush writes the data."""
        cache = DurableCache(memory_store)
        cache.set("a", 1)
        memory_store.fail_saves = True

        assert await cache.flush() is False
        assert cache.dirty is True
        assert cache.stats()["last_flush_error"] == "simulated save failure"

        memory_store.fail_saves = False
        assert await cache.flush() is True
        assert cache.dirty is False
        assert json.loads(memory_store.data) == [["a", 1]]

    @pytest.mark.asyncio
    async def test_unserializable_value_does_not_raise(self, memory_store):
        """A value JSON cannot encode fails the flush without raising."""
        cache = DurableCache(memory_store)
        cache.set("bad", object())

        assert await cache.flush() is False
        assert cache.dirty is True

    @pytest.mark.asyncio
    async def test_clear_empties_and_persists(self, memory_store):
        """clear() empties memory and writes the empty snapshot."""
        cache = DurableCache(memory_store)
        cache.set("a", 1)
        await cache.flush()

        await cache.clear()

        assert len(cache) == 0
        assert json.loads(memory_store.data) == []


class TestLoadFailures:
    """Any load problem means an empty cache, never an exception."""

    @pytest.mark.asyncio
    async def test_load_error_starts_empty(self, blob_store_factory):
        """A store that cannot be read yields an empty, usable cache."""
        store = blob_store_factory(data=b'[["a", 1]]')
        store.fail_loads = True
        cache = DurableCache(store)

        await cache.start()
        try:
            assert len(cache) == 0
            cache.set("b", 2)
            assert cache.get("b") == 2
        finally:
            await cache.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [b"not json", b'{"a": 1}', b'[["a"]]', b"[[1, 2]]"],
    )
    async def test_corrupt_snapshot_starts_empty(self, payload, blob_store_factory):
        """Undecodable or malformed snapshots are ignored."""
        cache = DurableCache(blob_store_factory(data=payload))
        await cache.start()
        try:
            assert len(cache) == 0
        finally:
            await cache.shutdown()


class TestLifecycle:
    """start/shutdown and the periodic flush task."""

    @pytest.mark.asyncio
    async def test_shutdown_forces_final_flush(self, memory_store):
        """Shutdown writes the snapshot even when nothing is dirty."""
        cache = DurableCache(memory_store, flush_interval_ms=60_000)
        await cache.start()

        await cache.shutdown()

        assert len(memory_store.saves) == 1
        assert cache.started is False

    @pytest.mark.asyncio
    async def test_periodic_flush_writes_dirty_cache(self, memory_store):
        """The background task flushes without an explicit call."""
        cache = DurableCache(memory_store, flush_interval_ms=100)
        await cache.start()
        try:
            cache.set("a", 1)
            for _ in range(50):
                if memory_store.saves:
                    break
                await asyncio.sleep(0.02)
            assert json.loads(memory_store.saves[0]) == [["a", 1]]
        finally:
            await cache.shutdown()

    @pytest.mark.asyncio
    async def test_double_start_is_rejected(self, memory_store):
        """Starting twice is a programming error."""
        cache = DurableCache(memory_store)
        await cache.start()
        try:
            with pytest.raises(RuntimeError):
                await cache.start()
        finally:
            await cache.shutdown()


class TestFileBlobStore:
    """Local file backend."""

    @pytest.mark.asyncio
    async def test_missing_file_loads_none(self, tmp_path):
        """No file yet means no snapshot."""
        store = FileBlobStore(tmp_path / "quotas.json")
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, tmp_path):
        """Saved bytes come back unchanged and no temp file remains."""
        path = tmp_path / "nested" / "quotas.json"
        store = FileBlobStore(path)

        await store.save(b'[["u1", 1]]')

        assert await store.load() == b'[["u1", 1]]'
        assert not (tmp_path / "nested" / "quotas.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_cache_survives_restart_on_disk(self, tmp_path):
        """A cache backed by a file reloads its entries after shutdown."""
        path = tmp_path / "snapdigest_user_quotas.json"
        first = DurableCache(FileBlobStore(path))
        await first.start()
        first.set("u1", {"count": 4, "reset_at": 99})
        await first.shutdown()

        second = DurableCache(FileBlobStore(path))
        await second.start()
        try:
            assert second.get("u1") == {"count": 4, "reset_at": 99}
        finally:
            await second.shutdown()
