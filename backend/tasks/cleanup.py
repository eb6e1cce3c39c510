"""
DealFlow Cleanup Tasks

Periodic maintenance of the resilience coordination tables.

Tasks:
    - cleanup_resilience_state: scheduled by beat every 30 minutes. Expires
      idempotency records, prunes circuit-breaker audit logs older than 24h,
      deactivates expired kill switches and clears expired execution locks.

Queue: normal
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.celery_app import celery_app
from backend.database import create_worker_session_factory
from backend.services.resilience import build_resilience_orchestrator

logger = logging.getLogger(__name__)


@celery_app.task(
    name="backend.tasks.cleanup.cleanup_resilience_state",
    queue="normal",
    soft_time_limit=300,
    time_limit=600,
)
def cleanup_resilience_state() -> dict[str, Any]:
    """
    Run one maintenance pass over the resilience tables.

    Each step runs independently; a failing step is recorded in ``errors``
    and does not stop the others.

    Returns:
        dict: Cleanup statistics including counts of deleted or expired rows.
    """
    return asyncio.run(_cleanup_resilience_state_async())


async def _cleanup_resilience_state_async(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> dict[str, Any]:
    logger.info("Starting resilience cleanup")
    started_at = datetime.now(timezone.utc)

    engine = None
    if session_factory is None:
        engine, session_factory = create_worker_session_factory()

    try:
        orchestrator = build_resilience_orchestrator(session_factory)
        stats = await orchestrator.perform_cleanup()
    finally:
        if engine is not None:
            await engine.dispose()

    stats["started_at"] = started_at.isoformat()
    stats["duration_seconds"] = round((datetime.now(timezone.utc) - started_at).total_seconds(), 3)

    if stats["errors"]:
        logger.warning(f"Resilience cleanup finished with {len(stats['errors'])} error(s): {stats['errors']}")
    else:
        logger.info(
            f"Resilience cleanup complete: {stats['idempotency_keys_deleted']} idempotency keys, "
            f"{stats['circuit_logs_deleted']} circuit logs, "
            f"{stats['kill_switches_expired']} kill switches, "
            f"{stats['execution_locks_deleted']} execution locks"
        )
    return stats
