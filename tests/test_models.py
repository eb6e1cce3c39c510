"""
Tests for the coordination store models and status machines.
"""
from datetime import datetime, timezone

import pytest

from backend.core.exceptions import IllegalTransitionError
from backend.models import (
    CIRCUIT_TRANSITIONS,
    ENRICHMENT_RESULT_MODELS,
    CircuitEvent,
    CircuitStatus,
    MonitoringStatus,
    as_utc,
    next_circuit_status,
)


class TestCircuitTransitions:
    """Tests for the circuit breaker state machine."""

    def test_trip_opens_closed_circuit(self):
        assert next_circuit_status(CircuitStatus.CLOSED, CircuitEvent.TRIP) is CircuitStatus.OPEN

    def test_retry_due_moves_open_to_half_open(self):
        assert next_circuit_status(CircuitStatus.OPEN, CircuitEvent.RETRY_DUE) is CircuitStatus.HALF_OPEN

    def test_recover_closes_half_open(self):
        assert next_circuit_status(CircuitStatus.HALF_OPEN, CircuitEvent.RECOVER) is CircuitStatus.CLOSED

    def test_failed_trial_call_reopens(self):
        assert next_circuit_status(CircuitStatus.HALF_OPEN, CircuitEvent.TRIP) is CircuitStatus.OPEN

    @pytest.mark.parametrize("status", list(CircuitStatus))
    def test_reset_always_closes(self, status):
        """Manual reset is accepted from every state."""
        assert next_circuit_status(status, CircuitEvent.RESET) is CircuitStatus.CLOSED

    @pytest.mark.parametrize(
        "status,event",
        [
            (CircuitStatus.CLOSED, CircuitEvent.RETRY_DUE),
            (CircuitStatus.CLOSED, CircuitEvent.RECOVER),
            (CircuitStatus.OPEN, CircuitEvent.RECOVER),
            (CircuitStatus.HALF_OPEN, CircuitEvent.RETRY_DUE),
        ],
    )
    def test_undefined_transition_raises(self, status, event):
        """Transitions missing from the table are rejected."""
        assert (status, event) not in CIRCUIT_TRANSITIONS

        with pytest.raises(IllegalTransitionError) as exc_info:
            next_circuit_status(status, event)

        assert exc_info.value.machine == "circuit"
        assert exc_info.value.current == status.value
        assert exc_info.value.event == event.value


class TestMonitoringStatus:
    """Tests for waterfall monitoring status."""

    def test_only_monitoring_is_non_terminal(self):
        assert not MonitoringStatus.MONITORING.is_terminal
        assert MonitoringStatus.COMPLETED.is_terminal
        assert MonitoringStatus.FAILED.is_terminal
        assert MonitoringStatus.TIMEOUT.is_terminal


class TestHelpers:
    """Tests for model helpers."""

    def test_as_utc_attaches_timezone_to_naive(self):
        naive = datetime(2026, 1, 1, 8, 30)
        assert as_utc(naive) == datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_as_utc_passes_none(self):
        assert as_utc(None) is None

    def test_seven_enrichment_engines(self):
        """Every fan-out engine has a result table."""
        assert len(ENRICHMENT_RESULT_MODELS) == 7
        assert "documents" in ENRICHMENT_RESULT_MODELS
        assert ENRICHMENT_RESULT_MODELS["documents"].__tablename__ == "deal_documents"
