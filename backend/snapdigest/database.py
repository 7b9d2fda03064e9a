"""
SnapDigest Backend — Database Engine and Session Factory
==========================================================

What:  Async SQLAlchemy engine construction, session factory, and ORM base.
Why:   When CACHE_BACKEND=database, cache snapshots are stored as rows in the
       `cache_blobs` table instead of local files. This lets several hosts
       restart onto the same state, or a managed database replace the temp dir.
How:   build_engine() creates an engine with connection pooling from Settings;
       build_session_factory() wraps it. CoreRuntime owns both and disposes
       the engine on shutdown.
Who:   CoreRuntime, SqlBlobStore, Alembic (Base.metadata), tests (aiosqlite).

Why factories instead of a module-level engine:
    Importing this module must not open pools or require a database. The
    file backend never touches SQLAlchemy at runtime, and tests build their
    own engine against a temporary SQLite file.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from snapdigest.config import Settings


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shared metadata is what Alembic inspects for --autogenerate.
    """
    pass


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for settings.database_url.

    SQLite (used by tests and single-host setups) does not accept pool sizing
    arguments, so those are only passed for server databases.
    """
    url = settings.database_url
    kwargs = {
        "pool_pre_ping": settings.db_pool_pre_ping,
        "echo": settings.log_level == "DEBUG",
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=3600,
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory with expire_on_commit=False.

    Without it, reading attributes after commit would trigger lazy reloads
    outside the session context.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """
    Create missing tables from ORM metadata.

    Used by tests and by CoreRuntime for SQLite URLs. Server databases are
    migrated with Alembic instead.
    """
    # Registers CacheBlob with Base.metadata
    from snapdigest.models import cache_blob  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
