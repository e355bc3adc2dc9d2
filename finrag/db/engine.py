# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg driver) shared by the SQL metadata store
# and the pgvector index. Both query paths and ingestion are async, so a
# single async engine serves FastAPI handlers, the in-process worker pool
# and Celery tasks (which drive the async pipeline with asyncio.run).
#
# SESSION LIFECYCLE (session_scope):
#   create → yield → commit (or rollback on error) → close
#
# The engine is created lazily and cached per URL, so importing this module
# never opens a connection and in-memory deployments never touch it.
# =============================================================================

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from finrag.db.models import Base

_engines: dict[str, AsyncEngine] = {}


def get_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Lazily create and cache an async engine for `database_url`."""
    engine = _engines.get(database_url)
    if engine is None:
        engine = create_async_engine(
            database_url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
        )
        _engines[database_url] = engine
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to `engine`.

    expire_on_commit=False keeps loaded attributes readable after commit,
    which async code needs (lazy refresh outside a session would fail).
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, rollback on any exception."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(engine: AsyncEngine, with_pgvector: bool = False) -> None:
    """
    Create missing tables.

    index_entries (and the pgvector extension) are only created when the
    pgvector index backend is in use.
    """
    tables = [
        table for name, table in Base.metadata.tables.items()
        if with_pgvector or name != "index_entries"
    ]
    async with engine.begin() as conn:
        if with_pgvector:
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(
            lambda sync_conn: Base.metadata.create_all(sync_conn, tables=tables)
        )


async def dispose_engines() -> None:
    """Close every cached engine's connection pool (app shutdown)."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
