"""
Tests for cleanup Celery tasks.
"""
from datetime import datetime, timedelta, timezone

import pytest

from backend.celery_app import celery_app
from backend.models import IdempotencyKey, IdempotencyStatus
from backend.tasks.cleanup import _cleanup_resilience_state_async, cleanup_resilience_state


class TestCleanupTaskRegistration:
    """Tests for task wiring."""

    def test_task_registered_on_normal_queue(self):
        assert cleanup_resilience_state.name == "backend.tasks.cleanup.cleanup_resilience_state"
        assert celery_app.conf.task_routes[cleanup_resilience_state.name] == {"queue": "normal"}

    def test_scheduled_by_beat(self):
        schedule = celery_app.conf.beat_schedule["resilience-cleanup"]
        assert schedule["task"] == cleanup_resilience_state.name
        assert schedule["schedule"] == timedelta(minutes=30)


class TestCleanupResilienceState:
    """Tests for the cleanup pass."""

    @pytest.mark.asyncio
    async def test_deletes_expired_records(self, session_factory, async_session):
        now = datetime.now(timezone.utc)
        async_session.add_all(
            [
                IdempotencyKey(
                    key="expired",
                    status=IdempotencyStatus.COMPLETED.value,
                    created_at=now - timedelta(hours=3),
                    expires_at=now - timedelta(hours=2),
                ),
                IdempotencyKey(
                    key="live",
                    status=IdempotencyStatus.PENDING.value,
                    created_at=now,
                    expires_at=now + timedelta(hours=1),
                ),
            ]
        )
        await async_session.commit()

        stats = await _cleanup_resilience_state_async(session_factory=session_factory)

        assert stats["idempotency_keys_deleted"] == 1
        assert stats["errors"] == []
        assert "started_at" in stats
        assert stats["duration_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_reports_step_errors(self, broken_session_factory):
        stats = await _cleanup_resilience_state_async(session_factory=broken_session_factory)

        assert len(stats["errors"]) == 4
