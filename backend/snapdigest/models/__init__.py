"""
SnapDigest Backend — Models Package
=====================================

cache_blob: SQLAlchemy model for persisted cache snapshots.
records:    Pydantic models for the values the caches hold and the results
            the quota, dedup and history services hand back.
"""
