"""
DealFlow Health Check Endpoints
Liveness and readiness checks for the API and the resilience layer.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from backend.core.config import settings
from backend.database import AsyncSessionLocal
from backend.schemas.resilience import SystemHealthStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Health Status Models
# =============================================================================


class HealthStatus(str, Enum):
    """Health status values for components and overall system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status for an individual component."""

    status: HealthStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None


class HealthResponse(BaseModel):
    """Full health check response."""

    status: HealthStatus
    timestamp: str
    components: dict[str, Any]
    version: str


class LivenessResponse(BaseModel):
    """Simple liveness check response."""

    status: str


# =============================================================================
# Health Check Functions
# =============================================================================


async def check_database(request: Request) -> ComponentHealth:
    """
    Check coordination store connectivity.

    Runs a simple query and measures latency.
    """
    session_factory = getattr(request.app.state, "session_factory", AsyncSessionLocal)
    start_time = time.perf_counter()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            latency = (time.perf_counter() - start_time) * 1000
            return ComponentHealth(
                status=HealthStatus.HEALTHY,
                latency_ms=round(latency, 2),
                message="Database connection successful",
            )
    except Exception as e:
        latency = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            latency_ms=round(latency, 2),
            message=f"Database connection failed: {str(e)}",
        )


async def check_resilience(request: Request) -> ComponentHealth:
    """
    Map the resilience system status onto component health.

    Kill switches or open circuits make the component degraded; the global
    kill switch makes it unhealthy.
    """
    start_time = time.perf_counter()
    health = await request.app.state.resilience.get_system_health()
    latency = (time.perf_counter() - start_time) * 1000

    mapping = {
        SystemHealthStatus.HEALTHY: HealthStatus.HEALTHY,
        SystemHealthStatus.DEGRADED: HealthStatus.DEGRADED,
        SystemHealthStatus.CRITICAL: HealthStatus.UNHEALTHY,
    }
    active = [switch.switch_name for switch in health.kill_switches]
    return ComponentHealth(
        status=mapping[health.status],
        latency_ms=round(latency, 2),
        message=health.error or (f"Active kill switches: {', '.join(active)}" if active else None),
    )


def determine_overall_status(components: dict[str, ComponentHealth]) -> HealthStatus:
    """
    Determine overall system health based on component statuses.

    - UNHEALTHY: If the database is unhealthy
    - DEGRADED: If any other component is degraded or unhealthy
    - HEALTHY: If all components are healthy
    """
    db_status = components.get("database")
    if db_status and db_status.status == HealthStatus.UNHEALTHY:
        return HealthStatus.UNHEALTHY

    if any(component.status != HealthStatus.HEALTHY for component in components.values()):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY


# =============================================================================
# Router Definition
# =============================================================================

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=LivenessResponse, summary="Basic liveness check")
async def basic_health() -> LivenessResponse:
    """Returns OK if the service is reachable."""
    return LivenessResponse(status="ok")


@router.get("/live", response_model=LivenessResponse, summary="Kubernetes liveness check")
async def liveness_check() -> LivenessResponse:
    """
    Kubernetes-style liveness check.

    If this fails, Kubernetes should restart the container.
    """
    return LivenessResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness check",
    responses={
        200: {"description": "Service can take requests"},
        503: {"description": "Coordination store unavailable"},
    },
)
async def readiness_check(request: Request, response: Response) -> HealthResponse:
    """
    Readiness check over the coordination store and the resilience layer.

    A degraded resilience layer (kill switch or open circuit) still answers
    200 so the API keeps serving admin requests.
    """
    components = {
        "database": await check_database(request),
        "resilience": await check_resilience(request),
    }
    overall_status = determine_overall_status(components)

    if overall_status == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components={name: component.model_dump(mode="json") for name, component in components.items()},
        version=settings.app_version,
    )
