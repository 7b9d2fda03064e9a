"""
SnapDigest Backend — Cache Engine
===================================

What:  In-memory state with periodic persistence.

    - durable.DurableCache:   string-keyed table, dirty flag, periodic flush
    - store.BlobStore:        load()/save() seam under the cache
    - store.FileBlobStore:    one JSON file per cache, atomic replace
    - sql_store.SqlBlobStore: one cache_blobs row per cache (SQLAlchemy)

The SQL store lives in its own module so the file backend never imports
SQLAlchemy models.
"""

from snapdigest.cache.durable import CacheEntry, DurableCache, epoch_ms
from snapdigest.cache.store import BlobStore, FileBlobStore

__all__ = ["BlobStore", "CacheEntry", "DurableCache", "FileBlobStore", "epoch_ms"]
