# Services package init
"""
SnapDigest Backend — Services Layer
=====================================

What:  Business logic between the routes (HTTP) and the durable caches.
Why:   Routes handle HTTP, services handle the rules; each can be tested alone.
How:   CoreRuntime builds one instance of each and hands the SummaryService
       to the routes through FastAPI dependency injection.

Service Inventory:
    - QuotaTracker: Per-user rolling-window quota on a DurableCache
    - DeduplicationCache: Collapses identical in-flight and recent requests
    - HistoryStore: Newest-first, capped per-user summary history
    - ContentProcessor (abstract): Interface for summarization providers
    - GeminiSummarizer: ContentProcessor backed by Google Gemini
    - TelegramIdentityResolver: Verifies WebApp initData, extracts user id
    - TelegramNotifier: Bot API delivery plus message formatting
    - SummaryService: Orchestrates identity → quota → dedup → history → delivery
"""
