"""
Alembic Migration Environment
===============================

What:  Migrates the `cache_blobs` table that backs CACHE_BACKEND=database.
Why:   Server databases are migrated; only SQLite gets create_all() at
       runtime (see snapdigest.database.create_tables).
How:   The database URL comes from snapdigest Settings, the same place
       CoreRuntime reads it, never from alembic.ini. `-x database_url=...`
       overrides it for one invocation (migrating a staging database from a
       laptop). Online runs use an async engine and hand a sync connection
       to Alembic through run_sync().
Who:   `alembic upgrade head` / `alembic revision --autogenerate` from backend/.

SQLite:
    ALTER TABLE support is minimal, so migrations run in batch mode there
    (copy, recreate, swap) and as plain ALTERs everywhere else.
"""

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

from snapdigest.config import Settings
from snapdigest.database import Base

# Registers CacheBlob with Base.metadata for --autogenerate
from snapdigest.models.cache_blob import CacheBlob  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    overrides = context.get_x_argument(as_dictionary=True)
    return overrides.get("database_url") or Settings().database_url


def _configure(url: str, **kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline(url: str) -> None:
    """Emit SQL to stdout without connecting."""
    _configure(
        url,
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection, url: str) -> None:
    _configure(url, connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online(url: str) -> None:
    # One short-lived connection; pooling would only delay dispose()
    engine = create_async_engine(url, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync, url)
    finally:
        await engine.dispose()


url = database_url()
if context.is_offline_mode():
    run_migrations_offline(url)
else:
    asyncio.run(run_migrations_online(url))
