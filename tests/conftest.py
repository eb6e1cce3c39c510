"""
DealFlow Test Configuration and Fixtures
Shared pytest fixtures for all test modules.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backend.models import Base


# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """Controllable UTC clock injected into services instead of the wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeSleep:
    """Async sleep that advances a FakeClock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to midday so day boundaries are never crossed by accident."""
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


# =============================================================================
# Database Fixtures
# =============================================================================


def _temp_db_path() -> str:
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    return db_path


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create an async SQLite engine with every table created."""
    # Use a unique temp file for each test to ensure complete isolation
    db_path = _temp_db_path()
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest_asyncio.fixture(scope="function")
async def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory over the test database, configured like the application's."""
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging and inspecting rows directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def broken_session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over a database with no tables.

    Every statement fails with an OperationalError, which stands in for an
    unavailable coordination store.
    """
    db_path = _temp_db_path()
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        echo=False,
    )

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()

    try:
        os.unlink(db_path)
    except OSError:
        pass
