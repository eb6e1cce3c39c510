"""
Tests for the Circuit Breaker service.
Tests trip/recover behaviour, the call budget and the audit log.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from backend.models import CircuitBreakerLog, CircuitStatus
from backend.schemas.resilience import CircuitBreakerConfig
from backend.services.circuit_breaker import CircuitBreaker, backoff_delay


def _config(**overrides) -> CircuitBreakerConfig:
    values = {
        "failure_threshold": 5,
        "recovery_timeout_seconds": 300,
        "monitor_window_seconds": 60,
        "call_budget_limit": 100,
    }
    values.update(overrides)
    return CircuitBreakerConfig(**values)


async def _fail():
    raise RuntimeError("upstream unavailable")


class TestBackoffDelay:
    """Tests for the backoff staircase."""

    def test_staircase(self):
        cap = timedelta(hours=2)
        assert backoff_delay(1, cap) == timedelta(minutes=1)
        assert backoff_delay(2, cap) == timedelta(minutes=5)
        assert backoff_delay(3, cap) == timedelta(minutes=15)
        assert backoff_delay(4, cap) == timedelta(minutes=60)
        assert backoff_delay(9, cap) == timedelta(minutes=60)

    def test_capped_at_recovery_timeout(self):
        assert backoff_delay(5, timedelta(minutes=5)) == timedelta(minutes=5)


class TestCircuitTripAndRecovery:
    """Tests for opening and closing circuits."""

    @pytest.mark.asyncio
    async def test_trip_reject_and_recover(self, session_factory, clock):
        """Five failures trip the breaker; it rejects until the retry time, then recovers on success."""
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)

        for attempt in range(4):
            result = await breaker.execute("op:D1", _fail)
            assert result.success is False
            assert result.should_retry is True
            assert breaker.get_status("op:D1").status is CircuitStatus.CLOSED

        result = await breaker.execute("op:D1", _fail)
        assert result.success is False
        assert result.should_retry is False
        state = breaker.get_status("op:D1")
        assert state.status is CircuitStatus.OPEN
        assert state.failure_count == 5
        assert state.next_retry_time == clock() + timedelta(minutes=5)

        clock.advance(30)
        operation = AsyncMock(return_value={"ok": True})
        rejected = await breaker.execute("op:D1", operation)
        assert rejected.success is False
        assert rejected.rejected is True
        assert rejected.should_retry is False
        assert "Circuit breaker open" in rejected.error
        operation.assert_not_awaited()

        clock.advance(minutes=5)
        recovered = await breaker.execute("op:D1", operation)
        assert recovered.success is True
        assert recovered.result == {"ok": True}
        operation.assert_awaited_once()
        state = breaker.get_status("op:D1")
        assert state.status is CircuitStatus.CLOSED
        assert state.next_retry_time is None

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens_immediately(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(failure_threshold=2), clock=clock)
        await breaker.execute("op", _fail)
        await breaker.execute("op", _fail)
        assert breaker.get_status("op").status is CircuitStatus.OPEN

        clock.advance(minutes=10)
        result = await breaker.execute("op", _fail)

        assert result.success is False
        assert result.rejected is False
        state = breaker.get_status("op")
        assert state.status is CircuitStatus.OPEN
        assert state.next_retry_time > clock()

    @pytest.mark.asyncio
    async def test_success_decrements_failure_count(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)
        await breaker.execute("op", _fail)
        await breaker.execute("op", _fail)

        await breaker.execute("op", AsyncMock(return_value=1))
        assert breaker.get_status("op").failure_count == 1

        await breaker.execute("op", AsyncMock(return_value=1))
        await breaker.execute("op", AsyncMock(return_value=1))
        state = breaker.get_status("op")
        assert state.failure_count == 0
        assert state.success_count == 3
        assert state.total_calls == 5

    @pytest.mark.asyncio
    async def test_exception_is_captured(self, session_factory, clock):
        """Operation exceptions never escape execute."""
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)

        result = await breaker.execute("op", _fail)

        assert result.success is False
        assert result.error == "upstream unavailable"

    @pytest.mark.asyncio
    async def test_manual_reset_closes_open_circuit(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(failure_threshold=1), clock=clock)
        await breaker.execute("op", _fail)
        assert breaker.get_status("op").status is CircuitStatus.OPEN

        state = breaker.reset("op")

        assert state.status is CircuitStatus.CLOSED
        assert state.failure_count == 0
        operation = AsyncMock(return_value="done")
        result = await breaker.execute("op", operation)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_get_status_returns_snapshot(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)
        await breaker.execute("op", AsyncMock(return_value=1))

        snapshot = breaker.get_status("op")
        snapshot.failure_count = 99

        assert breaker.get_status("op").failure_count == 0
        assert breaker.get_status("unknown") is None
        assert set(breaker.get_all_statuses()) == {"op"}


class TestCallBudget:
    """Tests for the sliding-window call budget."""

    @pytest.mark.asyncio
    async def test_budget_rejects_without_invoking(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(call_budget_limit=2), clock=clock)
        operation = AsyncMock(return_value="ok")

        await breaker.execute("op", operation)
        await breaker.execute("op", operation)
        result = await breaker.execute("op", operation)

        assert result.success is False
        assert result.rejected is True
        assert result.should_retry is True
        assert "Call budget exceeded" in result.error
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_budget_window_slides(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(call_budget_limit=1), clock=clock)
        operation = AsyncMock(return_value="ok")
        await breaker.execute("op", operation)

        clock.advance(61)
        result = await breaker.execute("op", operation)

        assert result.success is True
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_budget_is_per_key(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(call_budget_limit=1), clock=clock)
        await breaker.execute("a", AsyncMock(return_value=1))

        result = await breaker.execute("b", AsyncMock(return_value=2))

        assert result.success is True

    @pytest.mark.asyncio
    async def test_only_attempts_are_counted(self, session_factory, clock):
        """Success and failure rows do not consume budget."""
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)
        await breaker.execute("op", AsyncMock(return_value=1))
        await breaker.execute("op", _fail)

        assert await breaker.get_recent_call_count("op", timedelta(minutes=1)) == 2

        async with session_factory() as session:
            total = await session.scalar(select(func.count(CircuitBreakerLog.id)))
        assert total == 4


class TestStoreFailures:
    """Tests for behaviour when the audit log is unavailable."""

    @pytest.mark.asyncio
    async def test_runs_operation_when_log_unavailable(self, broken_session_factory, clock):
        breaker = CircuitBreaker(broken_session_factory, default_config=_config(call_budget_limit=1), clock=clock)
        operation = AsyncMock(return_value="ok")

        first = await breaker.execute("op", operation)
        second = await breaker.execute("op", operation)

        assert first.success is True
        assert second.success is True
        assert await breaker.get_recent_call_count("op", timedelta(minutes=1)) == 0


class TestCleanup:
    """Tests for audit log retention."""

    @pytest.mark.asyncio
    async def test_prunes_rows_past_retention(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(), clock=clock)
        await breaker.execute("old", AsyncMock(return_value=1))

        clock.advance(hours=23)
        await breaker.execute("recent", AsyncMock(return_value=1))

        clock.advance(hours=2)
        deleted = await breaker.cleanup(timedelta(hours=24))

        assert deleted == 2
        async with session_factory() as session:
            remaining = await session.scalar(select(func.count(CircuitBreakerLog.id)))
        assert remaining == 2


class TestHalfOpenTrialCall:
    """Tests for the single trial call admitted when a circuit goes half-open."""

    @pytest.mark.asyncio
    async def test_concurrent_caller_rejected_while_trial_runs(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(failure_threshold=1), clock=clock)
        await breaker.execute("op:D3", _fail)
        clock.advance(minutes=2)

        release = asyncio.Event()

        async def slow_recovery():
            await release.wait()
            return "recovered"

        trial = asyncio.create_task(breaker.execute("op:D3", slow_recovery))
        await asyncio.sleep(0)
        assert breaker.get_status("op:D3").status is CircuitStatus.HALF_OPEN

        bystander = AsyncMock(return_value="too early")
        rejected = await breaker.execute("op:D3", bystander)

        assert rejected.success is False
        assert rejected.rejected is True
        assert rejected.should_retry is False
        assert "trial call in progress" in rejected.error
        bystander.assert_not_awaited()

        release.set()
        result = await trial
        assert result.success is True
        assert result.result == "recovered"
        assert breaker.get_status("op:D3").status is CircuitStatus.CLOSED

        after = await breaker.execute("op:D3", bystander)
        assert after.success is True
        bystander.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_trial_frees_the_slot(self, session_factory, clock):
        breaker = CircuitBreaker(session_factory, default_config=_config(failure_threshold=1), clock=clock)
        await breaker.execute("op:D4", _fail)
        clock.advance(minutes=2)

        result = await breaker.execute("op:D4", _fail)
        assert result.success is False
        assert breaker.get_status("op:D4").status is CircuitStatus.OPEN

        clock.advance(minutes=10)
        operation = AsyncMock(return_value="ok")
        result = await breaker.execute("op:D4", operation)
        assert result.success is True
        operation.assert_awaited_once()
