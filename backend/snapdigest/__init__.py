"""
SnapDigest Backend — Application Package Initializer
=====================================================

What: Marks the `snapdigest` directory as a Python package.
Why:  Enables module imports like `from snapdigest.config import settings`.
Who:  Used implicitly by Python's import system and explicitly by Alembic, pytest, and uvicorn.

Architecture Note:
    The backend keeps a layered architecture with one extra layer for the
    cache engine that backs quotas, history and deduplication:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Quota, dedup, history, summarize
    ├─────────────────────────────────────┤
    │     Cache Engine (In-Memory State)  │  ← DurableCache + periodic flush
    ├─────────────────────────────────────┤
    │        Blob Stores (Persistence)    │  ← File or SQL backing store
    └─────────────────────────────────────┘

    Nothing in this package starts background work on import. The process
    entry point (the FastAPI lifespan) builds a CoreRuntime, starts it, and
    shuts it down on termination.
"""

__version__ = "1.0.0"
