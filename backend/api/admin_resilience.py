"""
Resilience Admin API Endpoints
Kill switches, emergency shutdown, circuit breakers, waterfall status and
system health.
"""
import logging
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, status
from sqlalchemy.exc import SQLAlchemyError

from backend.api.deps import ResilienceDep, WaterfallDep
from backend.core.exceptions import NotFoundError, ServiceUnavailableError
from backend.core.sentry import capture_message
from backend.schemas.resilience import (
    ActionResponse,
    CircuitStateResponse,
    EmergencyShutdownRequest,
    EmergencyShutdownResponse,
    KillSwitchActivateRequest,
    KillSwitchDeactivateRequest,
    KillSwitchResponse,
    SystemHealthResponse,
    WaterfallStatusResponse,
)
from backend.services.circuit_breaker import CircuitState
from backend.services.waterfall import WaterfallStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/resilience", tags=["Admin Resilience"])


def _circuit_response(state: CircuitState) -> CircuitStateResponse:
    data = asdict(state)
    data["status"] = state.status.value
    return CircuitStateResponse(**data)


@router.get("/health", response_model=SystemHealthResponse)
async def get_system_health(orchestrator: ResilienceDep) -> SystemHealthResponse:
    """Aggregate health: healthy, degraded or critical."""
    health = await orchestrator.get_system_health()
    return SystemHealthResponse(
        status=health.status,
        kill_switches=[switch.switch_name for switch in health.kill_switches],
        circuit_breakers={key: state.status.value for key, state in health.circuit_breakers.items()},
        error=health.error,
    )


# =============================================================================
# Kill Switches
# =============================================================================


@router.get("/kill-switches", response_model=List[KillSwitchResponse])
async def list_active_kill_switches(orchestrator: ResilienceDep) -> List[KillSwitchResponse]:
    """List kill switches currently in effect."""
    try:
        switches = await orchestrator.kill_switches.get_active_switches()
    except SQLAlchemyError as e:
        logger.error(f"Failed to read kill switches: {e}")
        raise ServiceUnavailableError("Kill switch store unavailable")
    return [KillSwitchResponse.model_validate(switch) for switch in switches]


@router.post("/kill-switches/{switch_name}/activate", response_model=ActionResponse)
async def activate_kill_switch(
    switch_name: str,
    data: KillSwitchActivateRequest,
    orchestrator: ResilienceDep,
) -> ActionResponse:
    """Activate a kill switch, optionally time-boxed."""
    activated = await orchestrator.kill_switches.activate(
        switch_name,
        reason=data.reason,
        activated_by=data.activated_by,
        ttl_hours=data.ttl_hours,
    )
    if not activated:
        raise ServiceUnavailableError(f"Failed to activate kill switch {switch_name}")

    logger.warning(f"Kill switch {switch_name} activated by {data.activated_by}: {data.reason}")
    return ActionResponse(success=True, message=f"Kill switch {switch_name} activated")


@router.post("/kill-switches/{switch_name}/deactivate", response_model=ActionResponse)
async def deactivate_kill_switch(
    switch_name: str,
    data: KillSwitchDeactivateRequest,
    orchestrator: ResilienceDep,
) -> ActionResponse:
    """Deactivate a kill switch."""
    try:
        existing = await orchestrator.kill_switches.get_switch(switch_name)
    except SQLAlchemyError as e:
        logger.error(f"Failed to read kill switch {switch_name}: {e}")
        raise ServiceUnavailableError(f"Failed to deactivate kill switch {switch_name}")
    if existing is None:
        raise NotFoundError("Kill switch", switch_name)

    if not await orchestrator.kill_switches.deactivate(switch_name, data.deactivated_by):
        raise ServiceUnavailableError(f"Failed to deactivate kill switch {switch_name}")

    logger.info(f"Kill switch {switch_name} deactivated by {data.deactivated_by}")
    return ActionResponse(success=True, message=f"Kill switch {switch_name} deactivated")


@router.post(
    "/emergency-shutdown",
    response_model=EmergencyShutdownResponse,
    status_code=status.HTTP_200_OK,
)
async def emergency_shutdown(
    data: EmergencyShutdownRequest,
    orchestrator: ResilienceDep,
) -> EmergencyShutdownResponse:
    """Activate every emergency kill switch for 24 hours. Reports partial success."""
    result = await orchestrator.kill_switches.emergency_shutdown(data.reason, data.activated_by)
    if not result.success:
        logger.error(f"Partial emergency shutdown, failed switches: {result.failed}")
    capture_message(
        f"Emergency shutdown by {data.activated_by}: {data.reason}",
        level="warning" if result.success else "error",
        extra={"activated": result.activated, "failed": result.failed},
    )
    return EmergencyShutdownResponse(success=result.success, activated=result.activated, failed=result.failed)


# =============================================================================
# Circuit Breakers
# =============================================================================


@router.get("/circuit-breakers", response_model=List[CircuitStateResponse])
async def list_circuit_breakers(orchestrator: ResilienceDep) -> List[CircuitStateResponse]:
    """Circuit state known to this process."""
    states = orchestrator.circuit_breaker.get_all_statuses()
    return [_circuit_response(state) for state in states.values()]


@router.post("/circuit-breakers/{operation_key}/reset", response_model=CircuitStateResponse)
async def reset_circuit_breaker(operation_key: str, orchestrator: ResilienceDep) -> CircuitStateResponse:
    """Manually close a circuit."""
    state = orchestrator.reset_circuit(operation_key)
    logger.info(f"Circuit breaker {operation_key} manually reset")
    return _circuit_response(state)


# =============================================================================
# Waterfall
# =============================================================================


def _waterfall_response(snapshot: WaterfallStatus) -> WaterfallStatusResponse:
    data = asdict(snapshot)
    data["overall_status"] = snapshot.overall_status.value
    data["engine_statuses"] = {name: engine.value for name, engine in snapshot.engine_statuses.items()}
    return WaterfallStatusResponse(**data)


@router.get("/waterfall/{deal_id}", response_model=WaterfallStatusResponse)
async def get_waterfall_status(deal_id: str, monitor: WaterfallDep) -> WaterfallStatusResponse:
    """Per-engine completion state for a deal, as last persisted by a monitor."""
    try:
        snapshot = await monitor.get_status(deal_id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to read waterfall status for {deal_id}: {e}")
        raise ServiceUnavailableError("Waterfall tracking store unavailable")
    if snapshot is None:
        raise NotFoundError("Waterfall tracking", deal_id)
    return _waterfall_response(snapshot)
