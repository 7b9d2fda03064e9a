"""
SnapDigest Backend — Abstract Content Processor Interface
==========================================================

What:  Abstract base class for the upstream service that turns text into a
       summary plus key points.
Why:   The deduplication and quota layers do not care which provider does
       the work. Tests plug in a fake; production uses Gemini.
How:   Concrete implementations inherit from ContentProcessor and implement
       invoke() and health_check().
Who:   Called by SummaryService through DeduplicationCache.get_or_compute().
"""

from abc import ABC, abstractmethod

from snapdigest.models.records import SummaryResult


class ContentProcessor(ABC):
    """
    Contract:
        - invoke() receives already-normalized text and returns a SummaryResult
        - Implementations handle their own retries and timeouts
        - Provider errors are translated to LLMServiceError,
          CircuitBreakerOpenError or SummarizationTimeoutError
        - invoke() may be slow; callers never hold a lock across it
    """

    @abstractmethod
    async def invoke(self, normalized_input: str) -> SummaryResult:
        """
        Summarize `normalized_input`.

        Returns:
            SummaryResult with a non-empty summary and at least one key point.

        Raises:
            LLMServiceError: Upstream failed or answered with something unusable.
            CircuitBreakerOpenError: Too many recent failures; rejected instantly.
            SummarizationTimeoutError: The call exceeded its time budget.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """
        True if the upstream is reachable. Must not consume quota.

        Called by GET /health?deep=true; must not raise.
        """
        ...
