"""
Waterfall Completion Monitor

Waits for the fan-out enrichment engines to finish writing results for a
deal, then hands off to data integration whatever the outcome. Engines are
never invoked from here; their own result tables are polled.

State per deal lives in ``engine_completion_tracking``:

    monitoring -> completed   every engine reports complete
    monitoring -> failed      enough engines report an error
    monitoring -> timeout     neither before ``timeout_at``; partial data is used
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import (
    COMPLETE_PROCESSING_STATUSES,
    ENRICHMENT_RESULT_MODELS,
    ERROR_PROCESSING_STATUSES,
    EngineCompletionTracking,
    EngineStatus,
    MonitoringStatus,
    as_utc,
)

logger = structlog.get_logger().bind(component="waterfall_monitor")

EngineCheck = Callable[[str], Awaitable[EngineStatus]]
DataIntegrator = Callable[[str, "MonitorResult"], Awaitable[dict[str, Any]]]


@dataclass
class MonitorResult:
    status: MonitoringStatus
    completed_engines: list[str] = field(default_factory=list)
    failed_engines: list[str] = field(default_factory=list)
    check_count: int = 0


@dataclass
class WaterfallStatus:
    """Snapshot of a deal's tracking row, plus whether this process is monitoring it."""

    deal_id: str
    overall_status: MonitoringStatus
    engine_statuses: dict[str, EngineStatus]
    completed_engines: list[str]
    failed_engines: list[str]
    check_count: int
    timeout_at: datetime
    updated_at: datetime
    running: bool = False


def evaluate_engines(statuses: dict[str, EngineStatus], failure_ratio: float) -> MonitoringStatus:
    """
    Overall status from per-engine statuses, ignoring the timeout.

    Completed if every engine is complete; failed if at least one engine
    errored and errors make up ``failure_ratio`` of the engines or more.
    """
    total = len(statuses)
    completed = sum(1 for status in statuses.values() if status is EngineStatus.COMPLETE)
    failed = sum(1 for status in statuses.values() if status is EngineStatus.ERROR)

    if total and completed == total:
        return MonitoringStatus.COMPLETED
    if failed and failed >= failure_ratio * total:
        return MonitoringStatus.FAILED
    return MonitoringStatus.MONITORING


def result_table_check(
    session_factory: async_sessionmaker[AsyncSession],
    model: type,
) -> EngineCheck:
    """Check that reads an engine's result table for a terminal processing status."""

    async def check(deal_id: str) -> EngineStatus:
        async with session_factory() as session:
            rows = await session.scalars(
                select(model.processing_status).where(model.deal_id == deal_id).distinct()
            )
            statuses = set(rows)
        if statuses & set(COMPLETE_PROCESSING_STATUSES):
            return EngineStatus.COMPLETE
        if statuses & set(ERROR_PROCESSING_STATUSES):
            return EngineStatus.ERROR
        return EngineStatus.PENDING

    return check


class WaterfallMonitor:
    """
    Bounded polling loop over the enrichment engines of a deal.

    Usage:
        monitor = WaterfallMonitor(AsyncSessionLocal)
        result = await monitor.monitor("deal-1")

        # or in the background, cancellable on shutdown
        task = monitor.start("deal-1")
        await monitor.stop_all()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        checks: Optional[dict[str, EngineCheck]] = None,
        failure_ratio: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.checks = checks or {
            engine: result_table_check(session_factory, model)
            for engine, model in ENRICHMENT_RESULT_MODELS.items()
        }
        self.failure_ratio = settings.waterfall_failure_ratio if failure_ratio is None else failure_ratio
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    async def monitor(
        self,
        deal_id: str,
        timeout: Optional[timedelta] = None,
        check_interval: Optional[timedelta] = None,
    ) -> MonitorResult:
        """
        Poll until the engines converge, enough of them fail, or time runs out.

        Always terminates: the timeout is enforced against the tracking row's
        ``timeout_at`` and no sleep runs past it.
        """
        timeout = timeout or timedelta(minutes=settings.waterfall_timeout_minutes)
        interval = (check_interval or timedelta(seconds=settings.waterfall_check_interval_seconds)).total_seconds()
        log = logger.bind(deal_id=deal_id)

        statuses, timeout_at = await self._ensure_tracking(deal_id, timeout)
        log.info("waterfall_monitoring_started", timeout_at=timeout_at.isoformat(), engines=len(statuses))

        check_count = 0
        while True:
            check_count += 1
            statuses = await self._check_all(deal_id, statuses)
            now = self._clock()

            status = evaluate_engines(statuses, self.failure_ratio)
            if status is MonitoringStatus.MONITORING and now >= timeout_at:
                status = MonitoringStatus.TIMEOUT

            result = MonitorResult(
                status=status,
                completed_engines=[name for name, s in statuses.items() if s is EngineStatus.COMPLETE],
                failed_engines=[name for name, s in statuses.items() if s is EngineStatus.ERROR],
                check_count=check_count,
            )
            await self._persist(deal_id, statuses, result)

            if status.is_terminal:
                log.info(
                    "waterfall_monitoring_finished",
                    status=status.value,
                    completed=len(result.completed_engines),
                    failed=len(result.failed_engines),
                    check_count=check_count,
                )
                return result

            log.debug(
                "waterfall_check",
                check_count=check_count,
                completed=len(result.completed_engines),
                total=len(statuses),
            )
            remaining = (timeout_at - now).total_seconds()
            await self._sleep(min(interval, remaining))

    async def _check_all(self, deal_id: str, previous: dict[str, EngineStatus]) -> dict[str, EngineStatus]:
        """Check every engine concurrently. A failed check keeps the engine's previous status."""
        names = list(self.checks)
        outcomes = await asyncio.gather(
            *(self.checks[name](deal_id) for name in names),
            return_exceptions=True,
        )

        statuses = dict(previous)
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("waterfall_check_failed", deal_id=deal_id, engine=name, error=str(outcome))
                statuses.setdefault(name, EngineStatus.PENDING)
            else:
                statuses[name] = EngineStatus(outcome)
        return statuses

    async def _ensure_tracking(
        self,
        deal_id: str,
        timeout: timedelta,
    ) -> tuple[dict[str, EngineStatus], datetime]:
        """
        Load or create the tracking row.

        A row still monitoring keeps its deadline; a finished row is re-armed
        with a fresh one. If the store is unavailable the deadline is kept in
        memory only.
        """
        now = self._clock()
        pending = {name: EngineStatus.PENDING for name in self.checks}

        try:
            async with self.session_factory() as session:
                tracking = await session.scalar(
                    select(EngineCompletionTracking).where(EngineCompletionTracking.deal_id == deal_id)
                )
                if tracking is None:
                    session.add(
                        EngineCompletionTracking(
                            deal_id=deal_id,
                            engine_statuses={name: s.value for name, s in pending.items()},
                            completed_engines=[],
                            failed_engines=[],
                            overall_status=MonitoringStatus.MONITORING.value,
                            check_count=0,
                            timeout_at=now + timeout,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        return await self._ensure_tracking(deal_id, timeout)
                    return pending, now + timeout

                if MonitoringStatus(tracking.overall_status).is_terminal:
                    tracking.engine_statuses = {name: s.value for name, s in pending.items()}
                    tracking.completed_engines = []
                    tracking.failed_engines = []
                    tracking.overall_status = MonitoringStatus.MONITORING.value
                    tracking.check_count = 0
                    tracking.timeout_at = now + timeout
                    tracking.updated_at = now
                    await session.commit()
                    return pending, now + timeout

                statuses = dict(pending)
                for name, value in (tracking.engine_statuses or {}).items():
                    if name in statuses:
                        statuses[name] = EngineStatus(value)
                return statuses, as_utc(tracking.timeout_at)

        except SQLAlchemyError as e:
            logger.error("waterfall_tracking_unavailable", deal_id=deal_id, error=str(e))
            return pending, now + timeout

    async def _persist(self, deal_id: str, statuses: dict[str, EngineStatus], result: MonitorResult) -> None:
        try:
            async with self.session_factory() as session:
                tracking = await session.scalar(
                    select(EngineCompletionTracking).where(EngineCompletionTracking.deal_id == deal_id)
                )
                if tracking is None:
                    return
                tracking.engine_statuses = {name: s.value for name, s in statuses.items()}
                tracking.completed_engines = result.completed_engines
                tracking.failed_engines = result.failed_engines
                tracking.overall_status = result.status.value
                tracking.check_count = (tracking.check_count or 0) + 1
                tracking.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("waterfall_tracking_write_failed", deal_id=deal_id, error=str(e))

    def start(
        self,
        deal_id: str,
        timeout: Optional[timedelta] = None,
        check_interval: Optional[timedelta] = None,
    ) -> asyncio.Task:
        """Run ``monitor`` as a background task. One task per deal."""
        existing = self._tasks.get(deal_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(
            self.monitor(deal_id, timeout, check_interval),
            name=f"waterfall-monitor:{deal_id}",
        )
        self._tasks[deal_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(deal_id) is done:
                del self._tasks[deal_id]

        task.add_done_callback(_forget)
        return task

    @property
    def running(self) -> list[str]:
        return [deal_id for deal_id, task in self._tasks.items() if not task.done()]

    async def stop_all(self) -> int:
        """Cancel every background monitor and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("waterfall_monitors_stopped", count=len(tasks))
        return len(tasks)

    async def get_status(self, deal_id: str) -> Optional[WaterfallStatus]:
        """
        Persisted convergence state for a deal.

        Returns:
            None if the deal was never monitored. Store errors propagate.
        """
        async with self.session_factory() as session:
            tracking = await session.scalar(
                select(EngineCompletionTracking).where(EngineCompletionTracking.deal_id == deal_id)
            )
        if tracking is None:
            return None

        return WaterfallStatus(
            deal_id=deal_id,
            overall_status=MonitoringStatus(tracking.overall_status),
            engine_statuses={name: EngineStatus(value) for name, value in (tracking.engine_statuses or {}).items()},
            completed_engines=list(tracking.completed_engines or []),
            failed_engines=list(tracking.failed_engines or []),
            check_count=tracking.check_count or 0,
            timeout_at=as_utc(tracking.timeout_at),
            updated_at=as_utc(tracking.updated_at),
            running=deal_id in self.running,
        )


# =============================================================================
# Processing
# =============================================================================


class EnrichmentSummaryIntegrator:
    """
    Default data-integration step: summarise what the engines produced.

    Counts result rows and averages completeness scores for the engines that
    completed, so downstream aggregation can work with partial data.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, deal_id: str, monitor_result: MonitorResult) -> dict[str, Any]:
        data_points = 0
        scores: list[float] = []

        async with self.session_factory() as session:
            for engine in monitor_result.completed_engines:
                model = ENRICHMENT_RESULT_MODELS.get(engine)
                if model is None:
                    continue
                count, score = (
                    await session.execute(
                        select(func.count(model.id), func.avg(model.data_completeness_score)).where(
                            model.deal_id == deal_id,
                            model.processing_status.in_(COMPLETE_PROCESSING_STATUSES),
                        )
                    )
                ).one()
                data_points += count or 0
                if score is not None:
                    scores.append(float(score))

        return {
            "engines_integrated": list(monitor_result.completed_engines),
            "data_points": data_points,
            "completeness_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        }


@dataclass
class WaterfallProcessingResult:
    success: bool
    completion_status: MonitoringStatus
    engines_processed: list[str] = field(default_factory=list)
    engines_failed: list[str] = field(default_factory=list)
    processing_time_ms: int = 0
    integration: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class WaterfallProcessingService:
    """Monitor the engines for a deal, then integrate whatever data exists."""

    def __init__(
        self,
        monitor: WaterfallMonitor,
        integrator: Optional[DataIntegrator] = None,
        timeout: Optional[timedelta] = None,
        check_interval: Optional[timedelta] = None,
    ):
        self.monitor = monitor
        self.integrator = integrator or EnrichmentSummaryIntegrator(monitor.session_factory)
        self.timeout = timeout
        self.check_interval = check_interval

    async def process(self, deal_id: str) -> WaterfallProcessingResult:
        started = time.perf_counter()
        try:
            monitor_result = await self.monitor.monitor(deal_id, self.timeout, self.check_interval)
            # Timeout and failure still proceed with the data that exists
            integration = await self.integrator(deal_id, monitor_result)
        except Exception as e:
            logger.exception("waterfall_processing_failed", deal_id=deal_id, error=str(e))
            return WaterfallProcessingResult(
                success=False,
                completion_status=MonitoringStatus.FAILED,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
                error=str(e) or "Unknown error",
            )

        return WaterfallProcessingResult(
            success=True,
            completion_status=monitor_result.status,
            engines_processed=monitor_result.completed_engines,
            engines_failed=monitor_result.failed_engines,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            integration=integration,
        )
