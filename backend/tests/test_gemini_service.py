"""
SnapDigest Backend — Gemini Summarizer Unit Tests (Mocked)
============================================================

What:  Tests for GeminiSummarizer with a fake model object.
Why:   Tests should not make real API calls (costs money, requires network).

What we test:
    ✅ JSON answers, with or without surrounding prose, become SummaryResults
    ✅ Malformed answers raise LLMServiceError
    ✅ API failures, timeouts and an open circuit map to the right errors
    ✅ Circuit breaker state machine
    ❌ Real API calls (use integration tests for that)
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from snapdigest.exceptions import (
    CircuitBreakerOpenError,
    LLMServiceError,
    SummarizationTimeoutError,
)
from snapdigest.services.gemini_service import (
    CircuitBreaker,
    GeminiSummarizer,
    parse_summary_response,
)

VALID_ANSWER = json.dumps(
    {"summary": "A short summary.", "keyPoints": ["one", "two", "three"]}
)


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_model(text=None, side_effect=None):
    model = MagicMock()
    if side_effect is not None:
        model.generate_content_async = AsyncMock(side_effect=side_effect)
    else:
        model.generate_content_async = AsyncMock(return_value=MagicMock(text=text))
    return model


class TestCircuitBreaker:
    """Tests for the CircuitBreaker resilience pattern."""

    def test_initial_state_is_closed(self):
        """New circuit breaker should start in CLOSED (allowing calls)."""
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        assert cb.state == "closed"
        assert cb.can_execute() is True

    def test_stays_closed_under_threshold(self):
        """Circuit breaker should remain CLOSED when failures < threshold."""
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        for _ in range(4):
            cb.record_failure()
        assert cb.state == "closed"

    def test_open_circuit_rejects_calls(self):
        """OPEN circuit breaker rejects with the remaining recovery time."""
        clock = FakeMonotonic()
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60, clock=clock)
        cb.record_failure()
        clock.now += 20

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            cb.can_execute()
        assert exc_info.value.recovery_time == 40

    def test_half_open_after_recovery_timeout(self):
        """After the recovery timeout one call is let through."""
        clock = FakeMonotonic()
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60, clock=clock)
        cb.record_failure()
        clock.now += 60

        assert cb.can_execute() is True
        assert cb.state == "half_open"

    def test_half_open_failure_reopens(self):
        """A failed test call sends the breaker back to OPEN."""
        clock = FakeMonotonic()
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60, clock=clock)
        cb.record_failure()
        clock.now += 61
        cb.can_execute()

        cb.record_failure()
        assert cb.state == "open"

    def test_success_closes(self):
        """Success resets the counter and closes the circuit."""
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        cb.record_failure()
        cb.record_success()
        assert cb.failure_count == 0
        assert cb.state == "closed"


class TestParseSummaryResponse:
    """JSON recovery and validation."""

    def test_plain_json(self):
        """A bare JSON answer parses directly."""
        result = parse_summary_response(VALID_ANSWER)
        assert result.summary == "A short summary."
        assert result.key_points == ["one", "two", "three"]

    def test_json_inside_prose(self):
        """JSON wrapped in text or code fences is extracted."""
        answer = f"Sure! Here you go:\n```json\n{VALID_ANSWER}\n```\nHope it helps."
        assert parse_summary_response(answer).key_points == ["one", "two", "three"]

    @pytest.mark.parametrize(
        "answer",
        [
            "",
            "no json here",
            "{broken",
            json.dumps({"summary": "", "keyPoints": ["a"]}),
            json.dumps({"summary": "s", "keyPoints": []}),
            json.dumps({"summary": "s", "keyPoints": ["a", "  "]}),
            json.dumps({"summary": "s"}),
            json.dumps(["not", "an", "object"]),
        ],
    )
    def test_unusable_answers(self, answer):
        """Anything without a summary and key points is rejected."""
        with pytest.raises(LLMServiceError):
            parse_summary_response(answer)


class TestGeminiSummarizerMocked:
    """GeminiSummarizer with a fake model."""

    @pytest.mark.asyncio
    async def test_invoke_success(self, test_settings):
        """A good answer becomes a SummaryResult and the prompt carries the text."""
        model = make_model(text=VALID_ANSWER)
        summarizer = GeminiSummarizer(test_settings, model=model)

        result = await summarizer.invoke("Some long article text")

        assert result.summary == "A short summary."
        prompt = model.generate_content_async.call_args.args[0]
        assert prompt.endswith("Some long article text")
        assert summarizer.circuit_breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_api_failure_raises_llm_error(self, test_settings):
        """An API exception after retries becomes LLMServiceError and counts a failure."""
        model = make_model(side_effect=RuntimeError("quota exceeded upstream"))
        summarizer = GeminiSummarizer(test_settings, model=model)

        with pytest.raises(LLMServiceError):
            await summarizer.invoke("text")
        assert summarizer.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self, test_settings):
        """A failure followed by success is retried transparently."""
        settings = test_settings.model_copy(
            update={"retry_max_attempts": 2, "retry_min_wait": 0, "retry_max_wait": 0}
        )
        model = make_model(
            side_effect=[ConnectionError("reset"), MagicMock(text=VALID_ANSWER)]
        )
        summarizer = GeminiSummarizer(settings, model=model)

        result = await summarizer.invoke("text")

        assert result.key_points == ["one", "two", "three"]
        assert model.generate_content_async.await_count == 2

    @pytest.mark.asyncio
    async def test_malformed_answer_is_not_an_outage(self, test_settings):
        """A malformed answer raises LLMServiceError without opening the circuit."""
        summarizer = GeminiSummarizer(test_settings, model=make_model(text="I cannot help"))

        with pytest.raises(LLMServiceError):
            await summarizer.invoke("text")
        assert summarizer.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_timeout(self, test_settings):
        """A call slower than the timeout raises SummarizationTimeoutError."""

        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        model = MagicMock()
        model.generate_content_async = slow
        summarizer = GeminiSummarizer(test_settings, model=model)
        summarizer.timeout_seconds = 0.05

        with pytest.raises(SummarizationTimeoutError):
            await summarizer.invoke("text")
        assert summarizer.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling(self, test_settings):
        """With the circuit open the model is not called at all."""
        model = make_model(text=VALID_ANSWER)
        summarizer = GeminiSummarizer(test_settings, model=model)
        for _ in range(summarizer.circuit_breaker.failure_threshold):
            summarizer.circuit_breaker.record_failure()

        with pytest.raises(CircuitBreakerOpenError):
            await summarizer.invoke("text")
        model.generate_content_async.assert_not_called()
