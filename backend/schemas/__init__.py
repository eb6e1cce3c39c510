"""
DealFlow Pydantic Schemas
Per-call configuration and admin API request/response models.
"""
from backend.schemas.resilience import (
    ActionResponse,
    AnalysisConfig,
    CircuitBreakerConfig,
    CircuitStateResponse,
    EmergencyShutdownRequest,
    EmergencyShutdownResponse,
    KillSwitchActivateRequest,
    KillSwitchDeactivateRequest,
    KillSwitchResponse,
    SystemHealthResponse,
    SystemHealthStatus,
    WaterfallStatusResponse,
)

__all__ = [
    "ActionResponse",
    "AnalysisConfig",
    "CircuitBreakerConfig",
    "CircuitStateResponse",
    "EmergencyShutdownRequest",
    "EmergencyShutdownResponse",
    "KillSwitchActivateRequest",
    "KillSwitchDeactivateRequest",
    "KillSwitchResponse",
    "SystemHealthResponse",
    "SystemHealthStatus",
    "WaterfallStatusResponse",
]
