"""
Tests for the resilience admin API and health endpoints.
"""
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from backend.models import EngineCompletionTracking, MonitoringStatus
from backend.schemas.resilience import CircuitBreakerConfig
from backend.services.kill_switch import EMERGENCY_SWITCHES, GLOBAL_ANALYSIS_SWITCH

BASE = "/api/admin/resilience"


async def _fail():
    raise RuntimeError("boom")


class TestKillSwitchEndpoints:
    """Tests for kill switch administration."""

    @pytest.mark.asyncio
    async def test_activate_list_deactivate(self, client):
        response = await client.post(
            f"{BASE}/kill-switches/engine_crunchbase/activate",
            json={"reason": "quota exhausted", "activated_by": "ops@example.com", "ttl_hours": 2},
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Kill switch engine_crunchbase activated"}

        response = await client.get(f"{BASE}/kill-switches")
        switches = response.json()
        assert [switch["switch_name"] for switch in switches] == ["engine_crunchbase"]
        assert switches[0]["reason"] == "quota exhausted"
        assert switches[0]["expires_at"] is not None

        response = await client.post(
            f"{BASE}/kill-switches/engine_crunchbase/deactivate",
            json={"deactivated_by": "ops@example.com"},
        )
        assert response.status_code == 200
        assert (await client.get(f"{BASE}/kill-switches")).json() == []

    @pytest.mark.asyncio
    async def test_deactivate_unknown_switch(self, client):
        response = await client.post(
            f"{BASE}/kill-switches/missing/deactivate",
            json={"deactivated_by": "ops"},
        )

        assert response.status_code == 404
        assert response.json()["message"] == "Kill switch not found: missing"

    @pytest.mark.asyncio
    async def test_activate_requires_reason(self, client):
        response = await client.post(
            f"{BASE}/kill-switches/s/activate",
            json={"reason": "", "activated_by": "ops"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_activate_store_failure_is_503(self, client, orchestrator, broken_session_factory):
        orchestrator.kill_switches.session_factory = broken_session_factory

        response = await client.post(
            f"{BASE}/kill-switches/s/activate",
            json={"reason": "r", "activated_by": "ops"},
        )

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_list_store_failure_is_503(self, client, orchestrator, broken_session_factory):
        orchestrator.kill_switches.session_factory = broken_session_factory

        response = await client.get(f"{BASE}/kill-switches")

        assert response.status_code == 503
        assert response.json()["message"] == "Kill switch store unavailable"

    @pytest.mark.asyncio
    async def test_deactivate_store_failure_is_503(self, client, orchestrator, broken_session_factory):
        orchestrator.kill_switches.session_factory = broken_session_factory

        response = await client.post(
            f"{BASE}/kill-switches/s/deactivate",
            json={"deactivated_by": "ops"},
        )

        assert response.status_code == 503
        assert response.json()["message"] == "Failed to deactivate kill switch s"

    @pytest.mark.asyncio
    async def test_emergency_shutdown(self, client):
        response = await client.post(
            f"{BASE}/emergency-shutdown",
            json={"reason": "suspected data leak", "activated_by": "cto"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["activated"] == list(EMERGENCY_SWITCHES)
        assert body["failed"] == []


class TestCircuitBreakerEndpoints:
    """Tests for circuit breaker administration."""

    @pytest.mark.asyncio
    async def test_list_and_reset(self, client, orchestrator):
        await orchestrator.circuit_breaker.execute("risk:deal-1", _fail, CircuitBreakerConfig(failure_threshold=1))

        response = await client.get(f"{BASE}/circuit-breakers")
        states = response.json()
        assert len(states) == 1
        assert states[0]["key"] == "risk:deal-1"
        assert states[0]["status"] == "open"
        assert states[0]["next_retry_time"] is not None

        response = await client.post(f"{BASE}/circuit-breakers/risk:deal-1/reset")
        assert response.status_code == 200
        assert response.json()["status"] == "closed"
        assert response.json()["failure_count"] == 0


class TestHealthEndpoints:
    """Tests for aggregate, liveness and readiness health endpoints."""

    @pytest.mark.asyncio
    async def test_system_health_levels(self, client, orchestrator):
        response = await client.get(f"{BASE}/health")
        assert response.json()["status"] == "healthy"

        await orchestrator.kill_switches.activate("engine_risk", "r", "ops")
        response = await client.get(f"{BASE}/health")
        assert response.json()["status"] == "degraded"
        assert response.json()["kill_switches"] == ["engine_risk"]

        await orchestrator.kill_switches.activate(GLOBAL_ANALYSIS_SWITCH, "r", "ops")
        response = await client.get(f"{BASE}/health")
        assert response.json()["status"] == "critical"

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_readiness_healthy(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["database"]["status"] == "healthy"
        assert body["components"]["resilience"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_readiness_degraded_by_kill_switch(self, client, orchestrator):
        await orchestrator.kill_switches.activate(GLOBAL_ANALYSIS_SWITCH, "incident", "ops")

        response = await client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["components"]["resilience"]["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_readiness_unavailable_without_store(self, client):
        from backend.main import app

        def unavailable():
            raise ConnectionError("connection refused")

        app.state.session_factory = unavailable
        response = await client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert "connection refused" in body["components"]["database"]["message"]


class TestWaterfallEndpoints:
    """Tests for reading a deal's engine completion state."""

    @pytest.mark.asyncio
    async def test_status_for_tracked_deal(self, client, async_session, clock):
        now = clock()
        async_session.add(
            EngineCompletionTracking(
                deal_id="deal-7",
                engine_statuses={"documents": "complete", "crunchbase": "error"},
                completed_engines=["documents"],
                failed_engines=["crunchbase"],
                overall_status=MonitoringStatus.MONITORING.value,
                check_count=2,
                timeout_at=now + timedelta(minutes=5),
                created_at=now,
                updated_at=now,
            )
        )
        await async_session.commit()

        response = await client.get(f"{BASE}/waterfall/deal-7")

        assert response.status_code == 200
        body = response.json()
        assert body["deal_id"] == "deal-7"
        assert body["overall_status"] == "monitoring"
        assert body["engine_statuses"] == {"documents": "complete", "crunchbase": "error"}
        assert body["completed_engines"] == ["documents"]
        assert body["failed_engines"] == ["crunchbase"]
        assert body["check_count"] == 2
        assert body["running"] is False

    @pytest.mark.asyncio
    async def test_untracked_deal_is_404(self, client):
        response = await client.get(f"{BASE}/waterfall/unknown")

        assert response.status_code == 404
        assert response.json()["message"] == "Waterfall tracking not found: unknown"

    @pytest.mark.asyncio
    async def test_store_failure_is_503(self, client, broken_session_factory):
        from backend.main import app

        app.state.waterfall_monitor.session_factory = broken_session_factory

        response = await client.get(f"{BASE}/waterfall/deal-7")

        assert response.status_code == 503


class TestErrorReporting:
    """Tests for unexpected errors and alerts reaching Sentry."""

    @pytest.mark.asyncio
    async def test_unexpected_error_is_captured(self, client, orchestrator):
        from backend.main import app

        orchestrator.circuit_breaker.get_all_statuses = Mock(side_effect=RuntimeError("state corrupted"))

        transport = ASGITransport(app=app, raise_app_exceptions=False)
        with patch("backend.main.capture_exception", return_value="evt-42") as capture:
            async with AsyncClient(transport=transport, base_url="http://test") as raw_client:
                response = await raw_client.get(f"{BASE}/circuit-breakers")

        assert response.status_code == 500
        body = response.json()
        assert body["error_id"] == "evt-42"
        capture.assert_called_once()
        error = capture.call_args.args[0]
        assert isinstance(error, RuntimeError)
        assert capture.call_args.kwargs["extra"]["request_path"] == f"{BASE}/circuit-breakers"

    @pytest.mark.asyncio
    async def test_emergency_shutdown_alerts(self, client):
        with patch("backend.api.admin_resilience.capture_message") as capture:
            response = await client.post(
                f"{BASE}/emergency-shutdown",
                json={"reason": "suspected data leak", "activated_by": "cto"},
            )

        assert response.status_code == 200
        capture.assert_called_once()
        assert capture.call_args.kwargs["level"] == "warning"
        assert "suspected data leak" in capture.call_args.args[0]
