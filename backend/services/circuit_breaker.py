"""
Circuit Breaker

Per-operation failure tracker with a capped backoff staircase and a
sliding-window call budget read from the ``circuit_breaker_logs`` audit table.

Circuit state lives in memory on the constructed instance and is best-effort;
the audit log in the shared store is advisory and every read or write against
it fails open.
"""

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import (
    CircuitBreakerLog,
    CircuitCallStatus,
    CircuitEvent,
    CircuitStatus,
    next_circuit_status,
)
from backend.schemas.resilience import CircuitBreakerConfig

logger = structlog.get_logger().bind(component="circuit_breaker")

# Backoff staircase, indexed by failure count and capped at the recovery timeout
BACKOFF_STEPS = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=60),
)


def backoff_delay(failure_count: int, recovery_timeout: timedelta) -> timedelta:
    """Time to keep a circuit open after ``failure_count`` failures."""
    index = min(max(failure_count - 1, 0), len(BACKOFF_STEPS) - 1)
    return min(BACKOFF_STEPS[index], recovery_timeout)


@dataclass
class CircuitState:
    """Circuit state for one operation key."""

    key: str
    status: CircuitStatus = CircuitStatus.CLOSED
    failure_count: int = 0
    success_count: int = 0
    total_calls: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None


@dataclass
class CircuitResult:
    """
    Outcome of a guarded call.

    ``rejected`` is set when the operation was never invoked (open circuit or
    exhausted call budget). ``should_retry`` tells the caller whether backing
    off and trying again later is worthwhile.
    """

    success: bool
    result: Any = None
    error: Optional[str] = None
    should_retry: bool = False
    rejected: bool = False
    duration_ms: Optional[int] = field(default=None, repr=False)


class CircuitBreaker:
    """
    Guards async operations keyed by name, usually ``{engine}:{deal_id}``.

    Usage:
        breaker = CircuitBreaker(AsyncSessionLocal)
        outcome = await breaker.execute("crunchbase:deal-1", fetch_company)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._trial_calls: set[str] = set()

    async def execute(
        self,
        operation_key: str,
        operation: Callable[[], Awaitable[Any]],
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitResult:
        """
        Run ``operation`` unless the circuit or call budget forbids it.

        Once the retry time has passed the circuit goes half-open and admits a
        single trial call; others arriving while it runs are rejected like an
        open circuit. Exceptions raised by the operation are captured into the
        result; they are never propagated.
        """
        config = config or self.default_config
        state = self._get_or_create_state(operation_key)
        now = self._clock()

        if state.status is CircuitStatus.OPEN:
            if state.next_retry_time is not None and now < state.next_retry_time:
                logger.info(
                    "circuit_open_rejected",
                    operation_key=operation_key,
                    next_retry_time=state.next_retry_time.isoformat(),
                )
                return CircuitResult(
                    success=False,
                    error=f"Circuit breaker open for {operation_key}. "
                    f"Next retry at {state.next_retry_time.isoformat()}",
                    should_retry=False,
                    rejected=True,
                )
            state.status = next_circuit_status(state.status, CircuitEvent.RETRY_DUE)
            logger.info("circuit_half_open", operation_key=operation_key)

        if state.status is CircuitStatus.HALF_OPEN:
            # One trial call at a time; concurrent callers are turned away until it settles
            if operation_key in self._trial_calls:
                logger.info("circuit_trial_in_progress", operation_key=operation_key)
                return CircuitResult(
                    success=False,
                    error=f"Circuit breaker half-open for {operation_key}, trial call in progress",
                    should_retry=False,
                    rejected=True,
                )
            self._trial_calls.add(operation_key)
            try:
                return await self._guarded_call(operation_key, operation, config, state)
            finally:
                self._trial_calls.discard(operation_key)

        return await self._guarded_call(operation_key, operation, config, state)

    async def _guarded_call(
        self,
        operation_key: str,
        operation: Callable[[], Awaitable[Any]],
        config: CircuitBreakerConfig,
        state: CircuitState,
    ) -> CircuitResult:
        """Check the call budget, then invoke the operation and record the outcome."""
        window = timedelta(seconds=config.monitor_window_seconds)
        recent_calls = await self.get_recent_call_count(operation_key, window)
        if recent_calls >= config.call_budget_limit:
            logger.warning(
                "circuit_call_budget_exceeded",
                operation_key=operation_key,
                recent_calls=recent_calls,
                limit=config.call_budget_limit,
            )
            return CircuitResult(
                success=False,
                error=f"Call budget exceeded for {operation_key} "
                f"({recent_calls}/{config.call_budget_limit} in last "
                f"{config.monitor_window_seconds}s)",
                should_retry=True,
                rejected=True,
            )

        state.total_calls += 1
        await self._record_call(operation_key, CircuitCallStatus.ATTEMPT)

        started = time.perf_counter()
        try:
            result = await operation()
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._record_failure(state, config)
            await self._record_call(
                operation_key,
                CircuitCallStatus.FAILURE,
                duration_ms=duration_ms,
                error=e,
            )
            return CircuitResult(
                success=False,
                error=str(e) or "Operation failed",
                should_retry=state.status is not CircuitStatus.OPEN,
                duration_ms=duration_ms,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        self._record_success(state)
        await self._record_call(operation_key, CircuitCallStatus.SUCCESS, duration_ms=duration_ms)
        return CircuitResult(success=True, result=result, duration_ms=duration_ms)

    def _get_or_create_state(self, key: str) -> CircuitState:
        if key not in self._states:
            self._states[key] = CircuitState(key=key)
        return self._states[key]

    def _record_success(self, state: CircuitState) -> None:
        state.success_count += 1
        state.last_success_time = self._clock()
        state.failure_count = max(0, state.failure_count - 1)

        if state.status is CircuitStatus.HALF_OPEN:
            state.status = next_circuit_status(state.status, CircuitEvent.RECOVER)
            state.next_retry_time = None
            logger.info("circuit_closed", operation_key=state.key)

    def _record_failure(self, state: CircuitState, config: CircuitBreakerConfig) -> None:
        now = self._clock()
        state.failure_count += 1
        state.last_failure_time = now

        # A failed trial call reopens the circuit straight away
        if (
            state.failure_count >= config.failure_threshold
            or state.status is CircuitStatus.HALF_OPEN
        ):
            state.status = next_circuit_status(state.status, CircuitEvent.TRIP)
            state.next_retry_time = now + backoff_delay(
                state.failure_count,
                timedelta(seconds=config.recovery_timeout_seconds),
            )
            logger.error(
                "circuit_opened",
                operation_key=state.key,
                failure_count=state.failure_count,
                next_retry_time=state.next_retry_time.isoformat(),
            )

    async def get_recent_call_count(self, operation_key: str, window: timedelta) -> int:
        """Count ``attempt`` rows inside the window. Returns 0 if the log is unreadable."""
        since = self._clock() - window
        try:
            async with self.session_factory() as session:
                count = await session.scalar(
                    select(func.count(CircuitBreakerLog.id)).where(
                        CircuitBreakerLog.function_name == operation_key,
                        CircuitBreakerLog.status == CircuitCallStatus.ATTEMPT.value,
                        CircuitBreakerLog.created_at >= since,
                    )
                )
                return count or 0
        except SQLAlchemyError as e:
            logger.warning("circuit_call_count_failed", operation_key=operation_key, error=str(e))
            return 0

    async def _record_call(
        self,
        operation_key: str,
        status: CircuitCallStatus,
        duration_ms: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    CircuitBreakerLog(
                        function_name=operation_key,
                        status=status.value,
                        duration_ms=duration_ms,
                        error_message=str(error) if error is not None else None,
                        extra_data={"type": type(error).__name__} if error is not None else None,
                        created_at=self._clock(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "circuit_call_record_failed",
                operation_key=operation_key,
                status=status.value,
                error=str(e),
            )

    def get_status(self, operation_key: str) -> Optional[CircuitState]:
        """Snapshot of the state for one key, or None if it was never called."""
        state = self._states.get(operation_key)
        return replace(state) if state is not None else None

    def get_all_statuses(self) -> dict[str, CircuitState]:
        return {key: replace(state) for key, state in self._states.items()}

    def reset(self, operation_key: str) -> CircuitState:
        """Manually close a circuit (emergency recovery)."""
        state = self._get_or_create_state(operation_key)
        state.status = next_circuit_status(state.status, CircuitEvent.RESET)
        state.failure_count = 0
        state.next_retry_time = None
        logger.info("circuit_manually_reset", operation_key=operation_key)
        return replace(state)

    async def cleanup(self, retention: Optional[timedelta] = None) -> int:
        """
        Delete audit rows older than the retention window.

        Returns:
            Number of rows deleted.
        """
        retention = retention or timedelta(hours=settings.circuit_log_retention_hours)
        cutoff = self._clock() - retention
        async with self.session_factory() as session:
            result = await session.execute(
                delete(CircuitBreakerLog).where(CircuitBreakerLog.created_at < cutoff)
            )
            await session.commit()
        logger.info("circuit_logs_pruned", deleted=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount or 0
