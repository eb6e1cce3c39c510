"""
Resilience schemas for per-call configuration and the admin API.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from backend.core.config import settings


class CircuitBreakerConfig(BaseModel):
    """Per-call circuit breaker tuning. Unset fields fall back to settings."""

    failure_threshold: int = Field(default=settings.circuit_failure_threshold, ge=1)
    recovery_timeout_seconds: int = Field(default=settings.circuit_recovery_timeout_seconds, ge=1)
    monitor_window_seconds: int = Field(default=settings.circuit_monitor_window_seconds, ge=1)
    call_budget_limit: int = Field(default=settings.circuit_call_budget_limit, ge=1)


class AnalysisConfig(BaseModel):
    """Options for a single protected analysis operation."""

    skip_idempotency: bool = False
    force_refresh: bool = Field(
        default=False,
        description="Run even if the analysis is already marked complete",
    )
    ttl_minutes: int = Field(default=settings.idempotency_ttl_minutes, ge=1)
    circuit_breaker: Optional[CircuitBreakerConfig] = None


class SystemHealthStatus(str, Enum):
    """Aggregate status of the resilience layer."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


# =============================================================================
# Kill Switches
# =============================================================================


class KillSwitchActivateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    activated_by: str = Field(..., min_length=1, max_length=255)
    ttl_hours: Optional[float] = Field(default=None, gt=0, description="Expire after this many hours")


class KillSwitchDeactivateRequest(BaseModel):
    deactivated_by: str = Field(..., min_length=1, max_length=255)


class EmergencyShutdownRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    activated_by: str = Field(..., min_length=1, max_length=255)


class KillSwitchResponse(BaseModel):
    """Kill switch as stored."""

    model_config = ConfigDict(from_attributes=True)

    switch_name: str
    is_active: bool
    reason: Optional[str] = None
    activated_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class EmergencyShutdownResponse(BaseModel):
    success: bool
    activated: list[str]
    failed: list[str]


# =============================================================================
# Circuit Breakers
# =============================================================================


class CircuitStateResponse(BaseModel):
    """In-process circuit breaker state for one operation key."""

    model_config = ConfigDict(from_attributes=True)

    key: str
    status: str
    failure_count: int
    success_count: int
    total_calls: int
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None


# =============================================================================
# Health
# =============================================================================


class SystemHealthResponse(BaseModel):
    status: SystemHealthStatus
    kill_switches: list[str] = Field(default_factory=list, description="Names of active switches")
    circuit_breakers: dict[str, str] = Field(default_factory=dict, description="Operation key -> status")
    error: Optional[str] = None


class ActionResponse(BaseModel):
    success: bool
    message: str


# =============================================================================
# Waterfall
# =============================================================================


class WaterfallStatusResponse(BaseModel):
    """Engine convergence state for one deal."""

    model_config = ConfigDict(from_attributes=True)

    deal_id: str
    overall_status: str
    engine_statuses: dict[str, str]
    completed_engines: list[str]
    failed_engines: list[str]
    check_count: int
    timeout_at: datetime
    updated_at: datetime
    running: bool = Field(default=False, description="A monitor for this deal is running in this process")
