"""
FastAPI Dependencies
Shared dependencies for the resilience components.
"""
from typing import Annotated

from fastapi import Depends, Request

from backend.services.resilience import ResilienceOrchestrator
from backend.services.waterfall import WaterfallMonitor


def get_orchestrator(request: Request) -> ResilienceOrchestrator:
    """Orchestrator built during application startup."""
    return request.app.state.resilience


def get_waterfall_monitor(request: Request) -> WaterfallMonitor:
    return request.app.state.waterfall_monitor


# Type aliases for dependency injection
ResilienceDep = Annotated[ResilienceOrchestrator, Depends(get_orchestrator)]
WaterfallDep = Annotated[WaterfallMonitor, Depends(get_waterfall_monitor)]
