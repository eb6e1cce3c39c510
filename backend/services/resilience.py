"""
Resilience Orchestrator

Composition root for running a deal analysis operation safely. Gates run in
a fixed order and each one can short-circuit the rest:

    1. global kill switch
    2. engine kill switch (keyed by operation name)
    3. persisted completion state
    4. execution lock for (deal_id, "analysis")
    5. deal rate limits and deal circuit
    6. idempotency key
    7. circuit-breaker guarded execution
    8. rate-limit and completion bookkeeping
    9. idempotency bookkeeping
   10. lock release, on every exit path

Bookkeeping writes are advisory: their failures are logged and reported in
``OperationOutcome.advisory_errors`` without changing the primary outcome.
"""

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.sentry import capture_exception
from backend.database import AsyncSessionLocal
from backend.models import CircuitStatus, TrackerStatus
from backend.schemas.resilience import AnalysisConfig, CircuitBreakerConfig, SystemHealthStatus
from backend.services.circuit_breaker import CircuitBreaker, CircuitResult, CircuitState
from backend.services.completion_tracker import CompletionTracker
from backend.services.deal_rate_limit import DealRateLimiter
from backend.services.execution_lock import ANALYSIS_LOCK, ExecutionLockManager
from backend.services.idempotency import IdempotencyManager
from backend.services.kill_switch import (
    GLOBAL_ANALYSIS_SWITCH,
    KillSwitchManager,
    KillSwitchState,
)

logger = structlog.get_logger().bind(component="resilience_orchestrator")


class SkipReason(str, Enum):
    """Why a gate declined to run an operation."""

    KILL_SWITCH = "kill_switch"
    ALREADY_COMPLETE = "already_complete"
    LOCKED = "locked"
    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"


@dataclass
class OperationOutcome:
    success: bool
    result: Any = None
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[SkipReason] = None
    advisory_errors: list[str] = field(default_factory=list)


@dataclass
class SystemHealth:
    status: SystemHealthStatus
    kill_switches: list[KillSwitchState] = field(default_factory=list)
    circuit_breakers: dict[str, CircuitState] = field(default_factory=dict)
    error: Optional[str] = None


def default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ResilienceOrchestrator:
    """Runs operations behind kill switches, locks, limits, idempotency and circuits."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        idempotency: IdempotencyManager,
        kill_switches: KillSwitchManager,
        locks: ExecutionLockManager,
        rate_limiter: DealRateLimiter,
        completion: CompletionTracker,
        instance_id: Optional[str] = None,
    ):
        self.circuit_breaker = circuit_breaker
        self.idempotency = idempotency
        self.kill_switches = kill_switches
        self.locks = locks
        self.rate_limiter = rate_limiter
        self.completion = completion
        self.instance_id = instance_id or default_instance_id()

    async def execute_analysis_operation(
        self,
        name: str,
        deal_id: str,
        operation: Callable[[], Awaitable[Any]],
        user_id: Optional[str] = None,
        config: Optional[AnalysisConfig] = None,
    ) -> OperationOutcome:
        """
        Run a deal-scoped analysis operation through every gate.

        Args:
            name: Operation (engine) name, also used for the engine kill switch.
            deal_id: Deal the operation belongs to.
            operation: Zero-argument coroutine function doing the real work.
            user_id: Actor that triggered the run, part of the idempotency key.
            config: Per-call options.

        Returns:
            OperationOutcome. Gate rejections come back as ``skipped=True``;
            this method does not raise.
        """
        config = config or AnalysisConfig()
        advisory_errors: list[str] = []
        log = logger.bind(operation=name, deal_id=deal_id)

        try:
            if await self.kill_switches.is_analysis_disabled():
                log.info("analysis_skipped", reason=SkipReason.KILL_SWITCH.value, switch=GLOBAL_ANALYSIS_SWITCH)
                return OperationOutcome(
                    success=False,
                    error="Global analysis kill switch is active",
                    skipped=True,
                    skip_reason=SkipReason.KILL_SWITCH,
                )

            if await self.kill_switches.is_engine_disabled(name):
                log.info("analysis_skipped", reason=SkipReason.KILL_SWITCH.value, switch=f"engine_{name}")
                return OperationOutcome(
                    success=False,
                    error=f"Engine kill switch is active for {name}",
                    skipped=True,
                    skip_reason=SkipReason.KILL_SWITCH,
                )

            if not config.force_refresh and await self._is_complete(deal_id, name, advisory_errors):
                log.info("analysis_skipped", reason=SkipReason.ALREADY_COMPLETE.value)
                return OperationOutcome(
                    success=True,
                    result={"status": "already_complete", "deal_id": deal_id, "analysis_type": name},
                    skipped=True,
                    skip_reason=SkipReason.ALREADY_COMPLETE,
                    advisory_errors=advisory_errors,
                )

            lock = await self.locks.acquire(
                deal_id,
                locked_by=self.instance_id,
                lock_type=ANALYSIS_LOCK,
                metadata={"operation": name},
            )
            if not lock.acquired:
                log.info("analysis_skipped", reason=SkipReason.LOCKED.value, locked_by=lock.locked_by)
                return OperationOutcome(
                    success=False,
                    error=f"Analysis already in progress for deal {deal_id}",
                    skipped=True,
                    skip_reason=SkipReason.LOCKED,
                    advisory_errors=advisory_errors,
                )

            try:
                return await self._run_locked(name, deal_id, operation, user_id, config, advisory_errors)
            finally:
                await self.locks.release(deal_id, ANALYSIS_LOCK, locked_by=self.instance_id)

        except Exception as e:
            log.exception("analysis_operation_error", error=str(e))
            capture_exception(e, extra={"operation": name, "deal_id": deal_id})
            return OperationOutcome(
                success=False,
                error=str(e) or "Unexpected error in resilience orchestrator",
                advisory_errors=advisory_errors,
            )

    async def _run_locked(
        self,
        name: str,
        deal_id: str,
        operation: Callable[[], Awaitable[Any]],
        user_id: Optional[str],
        config: AnalysisConfig,
        advisory_errors: list[str],
    ) -> OperationOutcome:
        """Gates 5 to 9. The caller holds the execution lock."""
        log = logger.bind(operation=name, deal_id=deal_id)

        decision = await self.rate_limiter.check(deal_id)
        if not decision.allowed:
            log.info("analysis_skipped", reason=SkipReason.RATE_LIMITED.value, detail=decision.reason)
            return OperationOutcome(
                success=False,
                error=decision.reason,
                skipped=True,
                skip_reason=SkipReason.RATE_LIMITED,
                advisory_errors=advisory_errors,
            )

        idempotency_key: Optional[str] = None
        if not config.skip_idempotency:
            idempotency_key = self.idempotency.generate_analysis_key(deal_id, name, user_id)
            check = await self.idempotency.check_key(idempotency_key, config.ttl_minutes)
            if not check.can_proceed:
                error = check.result.get("error") if isinstance(check.result, dict) else None
                log.info("analysis_skipped", reason=SkipReason.DUPLICATE.value, key=idempotency_key)
                return OperationOutcome(
                    success=error is None,
                    result=None if error else check.result,
                    error=error,
                    skipped=True,
                    skip_reason=SkipReason.DUPLICATE,
                    advisory_errors=advisory_errors,
                )

        await self._advisory(
            "completion_start",
            self.completion.start(deal_id, name, {"locked_by": self.instance_id, "user_id": user_id}),
            advisory_errors,
        )

        circuit = await self.circuit_breaker.execute(f"{name}:{deal_id}", operation, config.circuit_breaker)

        await self._record_outcome(name, deal_id, circuit, advisory_errors)

        if idempotency_key is not None:
            if circuit.success:
                await self._advisory(
                    "idempotency_completed",
                    self.idempotency.mark_completed(idempotency_key, circuit.result),
                    advisory_errors,
                )
            else:
                await self._advisory(
                    "idempotency_failed",
                    self.idempotency.mark_failed(idempotency_key, circuit.error),
                    advisory_errors,
                )

        if circuit.success:
            log.info("analysis_operation_completed", duration_ms=circuit.duration_ms)
        else:
            log.warning("analysis_operation_failed", error=circuit.error, rejected=circuit.rejected)

        return OperationOutcome(
            success=circuit.success,
            result=circuit.result,
            error=circuit.error,
            advisory_errors=advisory_errors,
        )

    async def _record_outcome(
        self,
        name: str,
        deal_id: str,
        circuit: CircuitResult,
        advisory_errors: list[str],
    ) -> None:
        if circuit.success:
            await self._advisory("rate_limit_success", self.rate_limiter.record_success(deal_id), advisory_errors)
            await self._advisory(
                "completion_finish",
                self.completion.finish(deal_id, name, TrackerStatus.COMPLETED, "completed"),
                advisory_errors,
            )
            return

        if circuit.rejected:
            # The operation never ran, so the deal's failure streak is left alone
            reason = "call_budget_exceeded" if circuit.should_retry else "circuit_open"
        else:
            await self._advisory("rate_limit_failure", self.rate_limiter.record_failure(deal_id), advisory_errors)
            reason = circuit.error

        await self._advisory(
            "completion_finish",
            self.completion.finish(deal_id, name, TrackerStatus.FAILED, reason),
            advisory_errors,
        )

    async def _is_complete(self, deal_id: str, name: str, advisory_errors: list[str]) -> bool:
        try:
            return await self.completion.is_complete(deal_id, name)
        except SQLAlchemyError as e:
            logger.warning("completion_check_failed", deal_id=deal_id, operation=name, error=str(e))
            advisory_errors.append(f"completion_check: {e}")
            return False

    @staticmethod
    async def _advisory(step: str, pending: Awaitable[Any], advisory_errors: list[str]) -> Any:
        """Await a bookkeeping write, capturing its failure instead of raising."""
        try:
            return await pending
        except Exception as e:
            logger.warning("advisory_write_failed", step=step, error=str(e))
            advisory_errors.append(f"{step}: {e}")
            return None

    async def execute_simple_operation(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        config: Optional[CircuitBreakerConfig] = None,
    ) -> OperationOutcome:
        """Run an operation that is not tied to a deal: kill switch and circuit breaker only."""
        try:
            if await self.kill_switches.is_active(name):
                return OperationOutcome(
                    success=False,
                    error=f"Kill switch is active for {name}",
                    skipped=True,
                    skip_reason=SkipReason.KILL_SWITCH,
                )

            circuit = await self.circuit_breaker.execute(name, operation, config)
            return OperationOutcome(success=circuit.success, result=circuit.result, error=circuit.error)
        except Exception as e:
            logger.exception("simple_operation_error", operation=name, error=str(e))
            capture_exception(e, extra={"operation": name})
            return OperationOutcome(success=False, error=str(e) or "Unexpected error")

    async def get_system_health(self) -> SystemHealth:
        """
        Aggregate health of the resilience layer.

        Any active kill switch degrades the system, the global one makes it
        critical. Without kill switches, any open circuit degrades it.
        """
        try:
            switches = await self.kill_switches.get_active_switches()
            circuits = self.circuit_breaker.get_all_statuses()
        except Exception as e:
            logger.error("system_health_failed", error=str(e))
            return SystemHealth(status=SystemHealthStatus.CRITICAL, error=str(e))

        status = SystemHealthStatus.HEALTHY
        if switches:
            if any(switch.switch_name == GLOBAL_ANALYSIS_SWITCH for switch in switches):
                status = SystemHealthStatus.CRITICAL
            else:
                status = SystemHealthStatus.DEGRADED
        elif any(state.status is CircuitStatus.OPEN for state in circuits.values()):
            status = SystemHealthStatus.DEGRADED

        return SystemHealth(status=status, kill_switches=switches, circuit_breakers=circuits)

    def reset_circuit(self, operation_key: str) -> CircuitState:
        return self.circuit_breaker.reset(operation_key)

    async def perform_cleanup(self) -> dict[str, Any]:
        """
        Periodic maintenance over the coordination tables.

        Each step runs independently; failures are collected in ``errors``.
        """
        stats: dict[str, Any] = {
            "idempotency_keys_deleted": 0,
            "circuit_logs_deleted": 0,
            "kill_switches_expired": 0,
            "execution_locks_deleted": 0,
            "errors": [],
        }
        steps = (
            ("idempotency_keys_deleted", self.idempotency.cleanup),
            ("circuit_logs_deleted", self.circuit_breaker.cleanup),
            ("kill_switches_expired", self.kill_switches.cleanup_expired),
            ("execution_locks_deleted", self.locks.cleanup_expired),
        )
        for stat, step in steps:
            try:
                stats[stat] = await step()
            except SQLAlchemyError as e:
                logger.error("resilience_cleanup_step_failed", step=stat, error=str(e))
                stats["errors"].append(f"{stat}: {e}")

        logger.info("resilience_cleanup_completed", **{k: v for k, v in stats.items() if k != "errors"})
        return stats


def build_resilience_orchestrator(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Optional[Callable[[], datetime]] = None,
    instance_id: Optional[str] = None,
) -> ResilienceOrchestrator:
    """
    Construct the orchestrator and its collaborators over one session factory.

    Defaults to the application's session factory and the wall clock.
    """
    session_factory = session_factory or AsyncSessionLocal
    clock = clock or (lambda: datetime.now(timezone.utc))

    return ResilienceOrchestrator(
        circuit_breaker=CircuitBreaker(session_factory, clock=clock),
        idempotency=IdempotencyManager(session_factory, clock=clock),
        kill_switches=KillSwitchManager(session_factory, clock=clock),
        locks=ExecutionLockManager(session_factory, clock=clock),
        rate_limiter=DealRateLimiter(session_factory, clock=clock),
        completion=CompletionTracker(session_factory, clock=clock),
        instance_id=instance_id,
    )
