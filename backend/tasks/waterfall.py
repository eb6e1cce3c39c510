"""
DealFlow Waterfall Tasks

Tasks:
    - process_deal_waterfall: wait for a deal's enrichment engines to
      converge (or time out), then integrate the available data.

Queue: high
"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.celery_app import celery_app
from backend.database import create_worker_session_factory
from backend.services.waterfall import WaterfallMonitor, WaterfallProcessingService

logger = logging.getLogger(__name__)


@celery_app.task(
    name="backend.tasks.waterfall.process_deal_waterfall",
    queue="high",
    autoretry_for=(),
)
def process_deal_waterfall(deal_id: str) -> dict[str, Any]:
    """
    Monitor enrichment engines for a deal and hand off to integration.

    Not retried automatically: a timeout or engine failure still produces a
    result, and a new run would start a fresh monitoring window.

    Args:
        deal_id: Deal whose enrichment engines to wait for.

    Returns:
        Processing result as a JSON-serialisable dict.
    """
    return asyncio.run(_process_deal_waterfall_async(deal_id))


async def _process_deal_waterfall_async(
    deal_id: str,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    service: Optional[WaterfallProcessingService] = None,
) -> dict[str, Any]:
    engine = None
    if service is None and session_factory is None:
        engine, session_factory = create_worker_session_factory()

    try:
        service = service or WaterfallProcessingService(WaterfallMonitor(session_factory))
        result = await service.process(deal_id)
    finally:
        if engine is not None:
            await engine.dispose()

    if result.success:
        logger.info(
            f"Waterfall processing for deal {deal_id} finished with status "
            f"{result.completion_status.value}: {len(result.engines_processed)} engine(s) complete, "
            f"{len(result.engines_failed)} failed, {result.processing_time_ms}ms"
        )
    else:
        logger.error(f"Waterfall processing for deal {deal_id} failed: {result.error}")

    data = asdict(result)
    data["completion_status"] = result.completion_status.value
    data["deal_id"] = deal_id
    return data
