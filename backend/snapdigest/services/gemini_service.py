"""
SnapDigest Backend — Google Gemini Summarizer
===============================================

What:  ContentProcessor that asks Gemini for a JSON summary of the input text.
Why:   Gemini's free tier and fast flash models fit a short-text summarizer.
How:   Sends the text with a JSON-only prompt, parses and validates the
       answer, wrapped in retry, circuit breaker and an overall timeout.
Who:   Built by CoreRuntime; called by SummaryService through the
       deduplication cache, so identical texts reach Gemini only once.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker so a dead upstream fails requests instantly
    3. asyncio.wait_for around the whole attempt chain (summarize_timeout_seconds)

Response Parsing:
    Models sometimes wrap the JSON in prose or code fences. The answer is
    parsed directly first; failing that, the outermost {...} block is
    extracted and parsed. The result must carry a non-empty "summary" and
    a non-empty "keyPoints" list of non-blank strings.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from typing import Any, Dict, Optional

import google.generativeai as genai
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from snapdigest.config import Settings
from snapdigest.exceptions import (
    CircuitBreakerOpenError,
    LLMServiceError,
    SummarizationTimeoutError,
)
from snapdigest.models.records import SummaryResult
from snapdigest.services.llm_base import ContentProcessor

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding the upstream model.

    State Machine:
        CLOSED    → failures counted; at failure_threshold → OPEN
        OPEN      → calls raise CircuitBreakerOpenError immediately;
                    after recovery_timeout seconds → HALF_OPEN
        HALF_OPEN → one call let through; success → CLOSED, failure → OPEN

    Not thread-safe: one instance lives on one event loop.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60, clock=time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self._clock = clock

    def can_execute(self) -> bool:
        """
        True if a call may proceed.

        Raises:
            CircuitBreakerOpenError while OPEN and still inside recovery_timeout.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            raise CircuitBreakerOpenError(recovery_time=int(self.recovery_timeout - elapsed))

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Response Parsing
# ══════════════════════════════════════════════════════════════════════════

def parse_summary_response(content: str) -> SummaryResult:
    """
    Turn the model's raw answer into a SummaryResult.

    Raises:
        LLMServiceError: No JSON found, or the JSON lacks a usable summary.
    """
    if not content or not content.strip():
        raise LLMServiceError(message="No response from AI")

    payload: Any
    try:
        payload = json.loads(content)
    except ValueError:
        match = _JSON_BLOCK.search(content)
        if match is None:
            logger.error("No JSON found in AI response: %.200s", content)
            raise LLMServiceError(message="Invalid response format from AI")
        try:
            payload = json.loads(match.group(0))
        except ValueError:
            logger.error("Failed to parse AI response: %.200s", content)
            raise LLMServiceError(message="Invalid response format from AI")

    return _validate_payload(payload)


def _validate_payload(payload: Any) -> SummaryResult:
    if not isinstance(payload, dict):
        raise LLMServiceError(message="Invalid response format from AI")

    summary = payload.get("summary")
    key_points = payload.get("keyPoints")

    if not isinstance(summary, str) or not summary.strip():
        raise LLMServiceError(message="Invalid response format from AI")
    if not isinstance(key_points, list) or not key_points:
        raise LLMServiceError(message="Invalid response format from AI")
    if any(not isinstance(point, str) or not point.strip() for point in key_points):
        raise LLMServiceError(message="Invalid response format from AI")

    return SummaryResult(
        summary=summary.strip(),
        key_points=[point.strip() for point in key_points],
    )


# ══════════════════════════════════════════════════════════════════════════
# Gemini Summarizer
# ══════════════════════════════════════════════════════════════════════════

class GeminiSummarizer(ContentProcessor):
    """
    Google Gemini implementation of ContentProcessor.

    Error Handling Chain:
        API call fails → tenacity retries (retry_max_attempts, backoff)
        → all retries fail → circuit breaker failure recorded → LLMServiceError
        → threshold reached → later calls rejected instantly
        → whole chain exceeds the timeout → SummarizationTimeoutError

    A malformed answer is not retried: the same prompt tends to produce
    the same shape again, so it fails straight to LLMServiceError.
    """

    SUMMARY_PROMPT = """You are a professional summarizer. Analyze the following text and provide a response in VALID JSON format ONLY. Do not include any text before or after the JSON.

Return ONLY a JSON object with this exact structure:
{
  "summary": "A concise 2-3 sentence summary of the main content",
  "keyPoints": ["key point 1", "key point 2", "key point 3", "key point 4", "key point 5"]
}

Requirements:
- The response MUST be valid JSON only
- summary must be a string (2-3 sentences)
- keyPoints must be an array of 3-5 strings
- Include no text before or after the JSON

Text to summarize:
"""

    GENERATION_CONFIG: Dict[str, Any] = {"temperature": 0.5, "max_output_tokens": 500}

    def __init__(self, settings: Settings, model: Optional[Any] = None):
        """
        Args:
            settings: Source of the API key, model name, retry, breaker and
                      timeout parameters.
            model: Pre-built model object (anything with generate_content_async);
                   tests pass a fake here.
        """
        self.settings = settings
        self.timeout_seconds = settings.summarize_timeout_seconds

        if model is None:
            if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
                genai.configure(api_key=settings.gemini_api_key)
            model = genai.GenerativeModel(settings.gemini_model)
        self.model = model

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiSummarizer initialized with model=%s, timeout=%ds, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            self.timeout_seconds,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    async def invoke(self, normalized_input: str) -> SummaryResult:
        """
        Summarize `normalized_input` with Gemini.

        Flow:
            1. Circuit breaker check (may raise CircuitBreakerOpenError)
            2. Retried API call, bounded by the timeout
            3. Parse and validate the JSON answer
            4. Record success/failure in the breaker
        """
        request_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        logger.info("[%s] Starting Gemini summary for %d chars", request_id, len(normalized_input))

        try:
            content = await asyncio.wait_for(
                self._call_gemini_with_retry(normalized_input, request_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Gemini summary timed out after %ds", request_id, self.timeout_seconds)
            raise SummarizationTimeoutError(
                timeout_seconds=self.timeout_seconds,
                context={"request_id": request_id},
            )
        except RetryError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] All Gemini retries exhausted: %s",
                request_id,
                str(e.last_attempt.exception()) if e.last_attempt else "Unknown error",
            )
            raise LLMServiceError(
                message="AI summarization failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"request_id": request_id, "attempts": self.settings.retry_max_attempts},
            )
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error("[%s] Unexpected Gemini error: %s", request_id, str(e), exc_info=True)
            raise LLMServiceError(
                message="An unexpected error occurred during summarization.",
                context={"request_id": request_id, "error_type": type(e).__name__},
            )

        # The upstream answered; a malformed answer is not an outage
        self.circuit_breaker.record_success()
        return parse_summary_response(content)

    async def _call_gemini_with_retry(self, text: str, request_id: str) -> str:
        """
        The retried part: only the API call, never the breaker check or parsing.

        Built per call from instance settings so tests can shrink the waits.
        """
        retrying = AsyncRetrying(
            # Gemini SDK raises generic exceptions for API errors
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self.settings.retry_max_attempts),
            wait=wait_exponential_jitter(
                initial=self.settings.retry_min_wait,
                max=self.settings.retry_max_wait,
                jitter=1,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_gemini(text, request_id)
        raise LLMServiceError(message="AI summarization produced no attempts")

    async def _call_gemini(self, text: str, request_id: str) -> str:
        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                self.SUMMARY_PROMPT + text,
                generation_config=self.GENERATION_CONFIG,
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                request_id,
                duration_ms,
                str(e),
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        content = response.text.strip() if response.text else ""
        logger.info(
            "[%s] Gemini summary completed in %.0fms, %d chars returned",
            request_id,
            duration_ms,
            len(content),
        )
        return content

    async def health_check(self) -> bool:
        """Lists models: cheap, authenticated, and consumes no tokens."""
        try:
            models = await asyncio.to_thread(lambda: [m.name for m in genai.list_models()])
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False

        target = f"models/{self.settings.gemini_model}"
        if target not in models:
            logger.warning("Configured model %s not found in available models", target)
        return True
