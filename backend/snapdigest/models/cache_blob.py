"""
SnapDigest Backend — CacheBlob SQLAlchemy Model
=================================================

What:  ORM model for the `cache_blobs` table: one row per named cache.
Why:   Backs SqlBlobStore. Each DurableCache flush rewrites its row's payload
       with the full serialized table, mirroring the one-file-per-cache layout
       of the file backend.
Who:   SqlBlobStore (read/upsert), Alembic (migration 001).

Table Design Rationale:
    - name: Primary key; the cache's store name (e.g. snapdigest_user_quotas)
    - payload: The serialized [key, value] pairs, stored as bytes exactly as
      the cache produced them (the store never parses it)
    - updated_at: Last successful flush, for operators inspecting staleness
"""

from datetime import datetime, timezone

from sqlalchemy import LargeBinary, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TIMESTAMP

from snapdigest.database import Base


class CacheBlob(Base):
    """Snapshot of one DurableCache, overwritten on every flush."""

    __tablename__ = "cache_blobs"

    name: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Store name of the owning cache",
    )

    # Why LargeBinary: The cache hands over bytes; BYTEA on PostgreSQL, BLOB on SQLite
    payload: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
        comment="Serialized cache snapshot",
    )

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        comment="When the snapshot was last written (UTC)",
    )

    def __repr__(self) -> str:
        return f"<CacheBlob(name='{self.name}', bytes={len(self.payload or b'')})>"
