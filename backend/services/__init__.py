"""
Backend services for the analysis resilience layer.
"""

from backend.services.circuit_breaker import CircuitBreaker, CircuitResult, CircuitState
from backend.services.completion_tracker import CompletionTracker
from backend.services.deal_rate_limit import DealRateLimiter, RateLimitDecision
from backend.services.execution_lock import ExecutionLockManager, LockResult
from backend.services.idempotency import IdempotencyCheck, IdempotencyManager
from backend.services.kill_switch import EmergencyShutdownResult, KillSwitchManager, KillSwitchState
from backend.services.resilience import (
    OperationOutcome,
    ResilienceOrchestrator,
    SkipReason,
    SystemHealth,
    build_resilience_orchestrator,
)
from backend.services.waterfall import (
    MonitorResult,
    WaterfallMonitor,
    WaterfallProcessingResult,
    WaterfallProcessingService,
    WaterfallStatus,
)

__all__ = [
    "CircuitBreaker",
    "CircuitResult",
    "CircuitState",
    "CompletionTracker",
    "DealRateLimiter",
    "RateLimitDecision",
    "ExecutionLockManager",
    "LockResult",
    "IdempotencyCheck",
    "IdempotencyManager",
    "EmergencyShutdownResult",
    "KillSwitchManager",
    "KillSwitchState",
    "OperationOutcome",
    "ResilienceOrchestrator",
    "SkipReason",
    "SystemHealth",
    "build_resilience_orchestrator",
    "MonitorResult",
    "WaterfallMonitor",
    "WaterfallProcessingResult",
    "WaterfallProcessingService",
    "WaterfallStatus",
]
