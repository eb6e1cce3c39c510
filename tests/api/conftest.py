"""
API test fixtures.
HTTP client wired to the application with test-database resilience components.
"""
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from backend.main import app
from backend.services.resilience import build_resilience_orchestrator
from backend.services.waterfall import WaterfallMonitor


@pytest_asyncio.fixture
async def orchestrator(session_factory, clock):
    return build_resilience_orchestrator(session_factory, clock=clock, instance_id="api-test")


@pytest_asyncio.fixture
async def client(session_factory, orchestrator):
    """
    Async client over ASGI. The lifespan is not run, so components are
    installed on app.state directly.
    """
    app.state.session_factory = session_factory
    app.state.resilience = orchestrator
    app.state.waterfall_monitor = WaterfallMonitor(session_factory)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await app.state.waterfall_monitor.stop_all()
    for attr in ("session_factory", "resilience", "waterfall_monitor"):
        delattr(app.state, attr)
