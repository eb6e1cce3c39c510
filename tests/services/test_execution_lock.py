"""
Tests for the Execution Lock Manager.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from backend.models import DealExecutionLock
from backend.services.execution_lock import ExecutionLockManager


@pytest.fixture
def locks(session_factory, clock):
    return ExecutionLockManager(session_factory, ttl=timedelta(hours=2), clock=clock)


class TestAcquireRelease:
    """Tests for taking and releasing locks."""

    @pytest.mark.asyncio
    async def test_second_acquire_reports_holder(self, locks):
        first = await locks.acquire("deal-1", "worker-a")
        second = await locks.acquire("deal-1", "worker-b")

        assert first.acquired is True
        assert second.acquired is False
        assert second.locked_by == "worker-a"
        assert second.locked_at is not None

    @pytest.mark.asyncio
    async def test_release_allows_reacquire(self, locks):
        await locks.acquire("deal-1", "worker-a")
        assert await locks.release("deal-1") is True

        result = await locks.acquire("deal-1", "worker-b")
        assert result.acquired is True

    @pytest.mark.asyncio
    async def test_lock_types_are_independent(self, locks):
        await locks.acquire("deal-1", "worker-a", lock_type="analysis")
        other = await locks.acquire("deal-1", "worker-b", lock_type="export")
        assert other.acquired is True

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, locks):
        results = await asyncio.gather(*(locks.acquire("deal-1", f"worker-{i}") for i in range(5)))
        assert sum(1 for result in results if result.acquired) == 1

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, locks, clock):
        await locks.acquire("deal-1", "crashed-worker")

        clock.advance(hours=2)
        result = await locks.acquire("deal-1", "worker-b")

        assert result.acquired is True

    @pytest.mark.asyncio
    async def test_stale_holder_cannot_release_successor(self, locks, clock):
        await locks.acquire("deal-1", "slow-worker")
        clock.advance(hours=2, minutes=1)
        assert (await locks.acquire("deal-1", "worker-b")).acquired is True

        assert await locks.release("deal-1", locked_by="slow-worker") is True

        assert await locks.is_locked("deal-1") is True
        contended = await locks.acquire("deal-1", "worker-c")
        assert contended.acquired is False
        assert contended.locked_by == "worker-b"

    @pytest.mark.asyncio
    async def test_owner_release(self, locks):
        await locks.acquire("deal-1", "worker-a")

        assert await locks.release("deal-1", locked_by="worker-a") is True
        assert await locks.is_locked("deal-1") is False

    @pytest.mark.asyncio
    async def test_metadata_stored(self, locks, async_session):
        await locks.acquire("deal-1", "worker-a", metadata={"operation": "risk"})

        row = await async_session.scalar(select(DealExecutionLock).where(DealExecutionLock.deal_id == "deal-1"))
        assert row.extra_data["operation"] == "risk"
        assert "acquired_at" in row.extra_data

    @pytest.mark.asyncio
    async def test_release_never_raises(self, broken_session_factory, clock):
        locks = ExecutionLockManager(broken_session_factory, clock=clock)
        assert await locks.release("deal-1") is False


class TestInspection:
    """Tests for lock inspection and cleanup."""

    @pytest.mark.asyncio
    async def test_is_locked_respects_expiry(self, locks, clock):
        assert await locks.is_locked("deal-1") is False
        await locks.acquire("deal-1", "worker-a")
        assert await locks.is_locked("deal-1") is True

        clock.advance(hours=3)
        assert await locks.is_locked("deal-1") is False

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, locks, clock):
        await locks.acquire("deal-1", "worker-a")
        clock.advance(hours=1)
        await locks.acquire("deal-2", "worker-a")

        clock.advance(hours=1, minutes=30)
        assert await locks.cleanup_expired() == 1
        assert await locks.is_locked("deal-2") is True
