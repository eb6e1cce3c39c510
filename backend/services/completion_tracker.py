"""
Completion tracker for analysis runs.

Persists per-(deal, analysis type) completion state in
``analysis_completion_tracker`` so an already finished analysis can be skipped
without running it again.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.models import AnalysisCompletionTracker, TrackerStatus

logger = structlog.get_logger().bind(component="completion_tracker")


class CompletionTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self._clock = clock

    async def get(self, deal_id: str, analysis_type: str) -> Optional[AnalysisCompletionTracker]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(AnalysisCompletionTracker).where(
                    AnalysisCompletionTracker.deal_id == deal_id,
                    AnalysisCompletionTracker.analysis_type == analysis_type,
                )
            )

    async def is_complete(self, deal_id: str, analysis_type: str) -> bool:
        tracker = await self.get(deal_id, analysis_type)
        return tracker is not None and tracker.status == TrackerStatus.COMPLETED.value

    async def start(
        self,
        deal_id: str,
        analysis_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Mark the analysis as in progress, reusing an existing row."""
        now = self._clock()
        async with self.session_factory() as session:
            tracker = await session.scalar(
                select(AnalysisCompletionTracker).where(
                    AnalysisCompletionTracker.deal_id == deal_id,
                    AnalysisCompletionTracker.analysis_type == analysis_type,
                )
            )
            if tracker is None:
                tracker = AnalysisCompletionTracker(deal_id=deal_id, analysis_type=analysis_type)
                session.add(tracker)
            tracker.status = TrackerStatus.IN_PROGRESS.value
            tracker.started_at = now
            tracker.completed_at = None
            tracker.completion_reason = None
            tracker.extra_data = metadata
            await session.commit()

    async def finish(
        self,
        deal_id: str,
        analysis_type: str,
        status: TrackerStatus,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Record the outcome of an in-progress analysis.

        Returns:
            True if an in-progress row was updated.
        """
        async with self.session_factory() as session:
            tracker = await session.scalar(
                select(AnalysisCompletionTracker).where(
                    AnalysisCompletionTracker.deal_id == deal_id,
                    AnalysisCompletionTracker.analysis_type == analysis_type,
                    AnalysisCompletionTracker.status == TrackerStatus.IN_PROGRESS.value,
                )
            )
            if tracker is None:
                logger.warning("completion_tracker_not_in_progress", deal_id=deal_id, analysis_type=analysis_type)
                return False
            tracker.status = status.value
            tracker.completed_at = self._clock()
            tracker.completion_reason = reason
            await session.commit()

        logger.info(
            "completion_tracker_finished",
            deal_id=deal_id,
            analysis_type=analysis_type,
            status=status.value,
        )
        return True
