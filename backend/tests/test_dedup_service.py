"""
SnapDigest Backend — DeduplicationCache Unit Tests
====================================================

What we test:
    ✅ Concurrent identical requests share one upstream call and one result
    ✅ Resolved results live exactly ttl_ms
    ✅ Failures reach every joined caller and leave the fingerprint retryable
    ✅ register_in_flight() refuses a second registration
    ✅ Fingerprints ignore surrounding whitespace and Unicode normalization form
    ✅ sweep, clear and stats; the sweep loop survives a failing sweep
    ✅ A None result is cached like any other
"""

import asyncio

import pytest

from snapdigest.exceptions import InFlightConflictError, LLMServiceError
from snapdigest.services.dedup_service import (
    ORIGIN_CACHED,
    ORIGIN_COMPUTED,
    ORIGIN_JOINED,
    DeduplicationCache,
)

TTL_MS = 3_600_000


@pytest.fixture
def dedup(clock):
    return DeduplicationCache(ttl_ms=TTL_MS, clock=clock)


class TestFingerprint:
    """Content hashing."""

    def test_whitespace_is_ignored(self):
        """Leading/trailing whitespace does not change the fingerprint."""
        assert DeduplicationCache.fingerprint("  hello\n") == DeduplicationCache.fingerprint("hello")

    def test_unicode_forms_are_equal(self):
        """Composed and decomposed forms of the same text hash the same."""
        composed = "caf\u00e9"
        decomposed = "cafe\u0301"
        assert DeduplicationCache.fingerprint(composed) == DeduplicationCache.fingerprint(decomposed)

    def test_different_text_differs(self):
        """Distinct content gives distinct 64-char hex digests."""
        a = DeduplicationCache.fingerprint("a")
        b = DeduplicationCache.fingerprint("b")
        assert a != b
        assert len(a) == 64


class TestCoalescing:
    """At most one computation in flight per fingerprint."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_invoke_once(self, dedup, processor):
        """Two simultaneous submissions call the processor once and get the same object."""
        processor.gate = asyncio.Event()

        first = asyncio.create_task(dedup.get_or_compute("same text", processor.invoke))
        second = asyncio.create_task(dedup.get_or_compute("same text", processor.invoke))
        await asyncio.sleep(0)
        processor.gate.set()

        (result_a, origin_a), (result_b, origin_b) = await asyncio.gather(first, second)

        assert len(processor.calls) == 1
        assert result_a is result_b
        assert {origin_a, origin_b} == {ORIGIN_COMPUTED, ORIGIN_JOINED}

    @pytest.mark.asyncio
    async def test_many_joiners_share_one_call(self, dedup, processor):
        """Any number of concurrent callers share the single computation."""
        processor.gate = asyncio.Event()
        tasks = [
            asyncio.create_task(dedup.get_or_compute("text", processor.invoke))
            for _ in range(20)
        ]
        await asyncio.sleep(0)
        assert dedup.stats()["in_flight"] == 1
        processor.gate.set()

        results = await asyncio.gather(*tasks)

        assert len(processor.calls) == 1
        assert len({id(result) for result, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_lookup_in_flight_then_register(self, dedup, processor):
        """The explicit lookup/register path sees the registered task."""
        fp = dedup.fingerprint("text")
        assert dedup.lookup_in_flight(fp) is None

        task = dedup.register_in_flight(fp, processor.invoke("text"))

        assert dedup.lookup_in_flight(fp) is task
        result = await task
        assert dedup.lookup_in_flight(fp) is None
        assert dedup.lookup_resolved(fp) is result

    @pytest.mark.asyncio
    async def test_second_registration_conflicts(self, dedup, processor):
        """register_in_flight() is insert-if-absent."""
        processor.gate = asyncio.Event()
        fp = dedup.fingerprint("text")
        task = dedup.register_in_flight(fp, processor.invoke("text"))

        with pytest.raises(InFlightConflictError):
            dedup.register_in_flight(fp, processor.invoke("text"))

        processor.gate.set()
        await task
        assert len(processor.calls) == 1

    @pytest.mark.asyncio
    async def test_processor_receives_normalized_text(self, dedup, processor):
        """compute() is called with the normalized content."""
        await dedup.get_or_compute("  padded  ", processor.invoke)
        assert processor.calls == ["padded"]


class TestTtl:
    """Resolved entry lifetime."""

    @pytest.mark.asyncio
    async def test_hit_just_before_ttl(self, dedup, processor, clock):
        """An entry is served at ttl - 1ms."""
        result, _ = await dedup.get_or_compute("text", processor.invoke)
        clock.advance(TTL_MS - 1)

        assert dedup.lookup_resolved(dedup.fingerprint("text")) is result

    @pytest.mark.asyncio
    async def test_miss_just_after_ttl(self, dedup, processor, clock):
        """An entry is gone at ttl + 1ms."""
        await dedup.get_or_compute("text", processor.invoke)
        clock.advance(TTL_MS + 1)

        assert dedup.lookup_resolved(dedup.fingerprint("text")) is None

    @pytest.mark.asyncio
    async def test_second_submission_within_ttl_is_cached(self, dedup, processor, clock):
        """A repeat inside the ttl does not call the processor."""
        await dedup.get_or_compute("text", processor.invoke)
        clock.advance(1_000)

        _, origin = await dedup.get_or_compute("text", processor.invoke)

        assert origin == ORIGIN_CACHED
        assert len(processor.calls) == 1

    @pytest.mark.asyncio
    async def test_resubmission_after_expiry_recomputes(self, dedup, processor, clock):
        """After ttl + 1ms the same content calls the processor again."""
        await dedup.get_or_compute("text", processor.invoke)
        clock.advance(TTL_MS + 1)

        _, origin = await dedup.get_or_compute("text", processor.invoke)

        assert origin == ORIGIN_COMPUTED
        assert len(processor.calls) == 2


class TestFailures:
    """Failed computations are shared, not cached."""

    @pytest.mark.asyncio
    async def test_failure_reaches_all_joiners(self, dedup, processor):
        """Every caller sharing a failed computation sees the error."""
        processor.gate = asyncio.Event()
        processor.error = LLMServiceError(message="upstream down")

        tasks = [
            asyncio.create_task(dedup.get_or_compute("text", processor.invoke))
            for _ in range(3)
        ]
        await asyncio.sleep(0)
        processor.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, LLMServiceError) for r in results)
        assert len(processor.calls) == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_fingerprint_retryable(self, dedup, processor):
        """After a failure nothing is cached and the next call recomputes."""
        processor.error = LLMServiceError(message="upstream down")
        with pytest.raises(LLMServiceError):
            await dedup.get_or_compute("text", processor.invoke)

        fp = dedup.fingerprint("text")
        assert dedup.lookup_in_flight(fp) is None
        assert dedup.lookup_resolved(fp) is None

        processor.error = None
        result, origin = await dedup.get_or_compute("text", processor.invoke)
        assert origin == ORIGIN_COMPUTED
        assert result.summary.startswith("Summary of")

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_task(self, dedup, processor):
        """A joiner that goes away leaves the computation running for others."""
        processor.gate = asyncio.Event()
        leaver = asyncio.create_task(dedup.get_or_compute("text", processor.invoke))
        stayer = asyncio.create_task(dedup.get_or_compute("text", processor.invoke))
        await asyncio.sleep(0)

        leaver.cancel()
        await asyncio.sleep(0)
        processor.gate.set()

        result, _ = await stayer
        assert result.key_points
        assert dedup.lookup_resolved(dedup.fingerprint("text")) is result


class TestHousekeeping:
    """sweep, clear, cache_response, stats, lifecycle."""

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_only(self, dedup, clock):
        """sweep_expired() drops entries older than ttl."""
        dedup.cache_response("old", {"summary": "old"})
        clock.advance(TTL_MS + 1)
        dedup.cache_response("new", {"summary": "new"})

        assert dedup.sweep_expired() == 1
        assert dedup.lookup_resolved(dedup.fingerprint("new")) == {"summary": "new"}

    def test_cache_response_is_served(self, dedup):
        """A directly cached result is returned by lookup_resolved()."""
        dedup.cache_response("text", {"summary": "s"})
        assert dedup.lookup_resolved(dedup.fingerprint("text")) == {"summary": "s"}

    def test_clear_forgets_everything(self, dedup):
        """clear() empties the resolved map."""
        dedup.cache_response("text", {"summary": "s"})
        dedup.clear()
        assert dedup.stats() == {"in_flight": 0, "cached": 0, "total_size": 0}

    @pytest.mark.asyncio
    async def test_stats_reports_size(self, dedup, processor):
        """total_size is the JSON length of cached results."""
        result, _ = await dedup.get_or_compute("text", processor.invoke)
        stats = dedup.stats()

        assert stats["cached"] == 1
        assert stats["total_size"] == len(result.model_dump_json())

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, clock):
        """The sweep task starts once and stops cleanly."""
        dedup = DeduplicationCache(ttl_ms=TTL_MS, sweep_interval_ms=60_000, clock=clock)
        await dedup.start()
        with pytest.raises(RuntimeError):
            await dedup.start()
        await dedup.shutdown()
        await dedup.shutdown()

    @pytest.mark.asyncio
    async def test_sweep_loop_survives_errors(self, clock):
        """A failing sweep is logged and the loop keeps ticking."""
        dedup = DeduplicationCache(ttl_ms=TTL_MS, sweep_interval_ms=5, clock=clock)
        calls = []

        def flaky_sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("sweep blew up")
            return 0

        dedup.sweep_expired = flaky_sweep
        await dedup.start()
        try:
            for _ in range(200):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)
            assert len(calls) >= 3
            assert not dedup._sweep_task.done()
        finally:
            await dedup.shutdown()


class TestNoneResults:
    """Computations whose result is None."""

    @pytest.mark.asyncio
    async def test_none_result_is_cached(self, dedup):
        """None is a real result: the second call is a cache hit, not a recompute."""
        calls = []

        async def compute(text):
            calls.append(text)
            return None

        first = await dedup.get_or_compute("text", compute)
        second = await dedup.get_or_compute("text", compute)

        assert first == (None, ORIGIN_COMPUTED)
        assert second == (None, ORIGIN_CACHED)
        assert len(calls) == 1
