"""
DealFlow Database Connection Setup
Provides the async engine and session factories for the coordination store.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from backend.core.config import settings
from backend.models import Base

# =============================================================================
# Async Engine and Session (for FastAPI)
# =============================================================================

async_engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=3600,
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# =============================================================================
# Worker Engine (for Celery tasks)
# =============================================================================


def create_worker_session_factory() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create an engine and session factory for use inside ``asyncio.run``.

    Celery tasks run each invocation in a fresh event loop, so pooled
    connections cannot be shared between calls. The returned engine uses
    ``NullPool`` and must be disposed by the caller.
    """
    engine = create_async_engine(
        settings.async_database_url,
        echo=settings.debug,
        poolclass=NullPool,
    )
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, factory


# =============================================================================
# Database Initialization
# =============================================================================


async def init_db() -> None:
    """
    Initialize the database by creating all tables.

    Note: In production, use Alembic migrations instead.
    This is primarily for development and testing.
    """
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """
    Close all database connections.

    Call this during application shutdown.
    """
    await async_engine.dispose()
