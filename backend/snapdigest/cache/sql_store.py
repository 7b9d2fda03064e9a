"""
SnapDigest Backend — SQL Blob Store
=====================================

What:  BlobStore implementation that keeps a cache snapshot in one row of the
       `cache_blobs` table.
Why:   Lets the quota and history caches survive on a managed database
       instead of a local temp directory, without changing DurableCache.
How:   load() selects the row by name; save() upserts it in its own
       transaction. Works on PostgreSQL (asyncpg) and SQLite (aiosqlite).
Who:   Built by CoreRuntime when CACHE_BACKEND=database.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from snapdigest.cache.store import BlobStore
from snapdigest.exceptions import PersistenceError
from snapdigest.models.cache_blob import CacheBlob

logger = logging.getLogger(__name__)


class SqlBlobStore(BlobStore):
    """
    Row-per-cache blob storage.

    Upsert strategy:
        session.get() then update-or-add. Only the owning cache writes this
        row and its flushes never overlap, so the read-then-write cannot race.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], name: str):
        self._session_factory = session_factory
        self.name = name

    async def load(self) -> Optional[bytes]:
        try:
            async with self._session_factory() as session:
                row = await session.get(CacheBlob, self.name)
                return bytes(row.payload) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(
                message=f"Could not read cache blob {self.name}",
                context={"error_type": type(e).__name__, "error": str(e)},
            ) from e

    async def save(self, data: bytes) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(CacheBlob, self.name)
                    if row is None:
                        session.add(CacheBlob(name=self.name, payload=data))
                    else:
                        row.payload = data
                        row.updated_at = datetime.now(timezone.utc)
        except SQLAlchemyError as e:
            raise PersistenceError(
                message=f"Could not write cache blob {self.name}",
                context={"error_type": type(e).__name__, "error": str(e)},
            ) from e

    def __repr__(self) -> str:
        return f"<SqlBlobStore(name='{self.name}')>"
