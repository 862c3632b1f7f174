"""
SQLAlchemy async session setup for the PoliScope backend.

Persistence is optional: when DATABASE_URL is unset the pipeline runs fully
in memory and no engine is created.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from poliscope_backend.config import DATABASE_URL


def normalize_database_url(url: Optional[str]) -> Optional[str]:
    # Convert postgres:// to postgresql+asyncpg:// for SQLAlchemy async
    if url and url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url and url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


_async_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def is_database_configured() -> bool:
    return bool(DATABASE_URL)


def get_session_factory() -> async_sessionmaker:
    """Create the engine and session factory on first use."""
    global _async_engine, _session_factory

    if _session_factory is None:
        if not DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not configured")
        _async_engine = create_async_engine(
            normalize_database_url(DATABASE_URL),
            echo=False,  # Set to True for SQL query logging
            future=True,
        )
        _session_factory = async_sessionmaker(
            _async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_database() -> None:
    """Create any missing pipeline tables; existing tables are left as they are."""
    from poliscope_backend.models import Base

    get_session_factory()
    async with _async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_optional_session():
    """
    FastAPI dependency yielding a database session, or None when no database
    is configured. Commits on success and rolls back on error.
    """
    if not is_database_configured():
        yield None
        return
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    global _async_engine, _session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _session_factory = None
