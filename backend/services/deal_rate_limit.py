"""
Deal Rate Limiter

Entity-level limits for how often a deal may be analysed, plus a coarse
per-deal circuit that opens after repeated failures. This is separate from
the per-operation circuit breaker.

The record is read-modify-written without its own locking: callers hold the
deal's execution lock while using it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import DealRateLimit, as_utc

logger = structlog.get_logger().bind(component="deal_rate_limit")


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    next_allowed_at: Optional[datetime] = None


class DealRateLimiter:
    """Hourly spacing, daily cap and entity circuit over ``deal_rate_limits``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        min_interval: Optional[timedelta] = None,
        max_per_day: Optional[int] = None,
        failure_threshold: Optional[int] = None,
        circuit_cooldown: Optional[timedelta] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.min_interval = min_interval or timedelta(minutes=settings.deal_min_analysis_interval_minutes)
        self.max_per_day = max_per_day or settings.deal_max_analyses_per_day
        self.failure_threshold = failure_threshold or settings.deal_failure_circuit_threshold
        self.circuit_cooldown = circuit_cooldown or timedelta(minutes=settings.deal_circuit_cooldown_minutes)
        self._clock = clock

    async def check(self, deal_id: str) -> RateLimitDecision:
        """
        Decide whether the deal may be analysed now.

        An allowed check counts as an analysis. Store errors allow.
        """
        now = self._clock()
        today = now.date()

        try:
            async with self.session_factory() as session:
                record = await session.scalar(select(DealRateLimit).where(DealRateLimit.deal_id == deal_id))

                if record is None:
                    session.add(
                        DealRateLimit(
                            deal_id=deal_id,
                            last_analysis_at=now,
                            analysis_count_today=1,
                            reset_date=today,
                            consecutive_failures=0,
                        )
                    )
                    await session.commit()
                    return RateLimitDecision(allowed=True)

                if record.is_circuit_open:
                    opened_at = as_utc(record.circuit_opened_at) or now
                    reopen_at = opened_at + self.circuit_cooldown
                    if now < reopen_at:
                        return RateLimitDecision(
                            allowed=False,
                            reason="Circuit breaker is open due to repeated failures",
                            next_allowed_at=reopen_at,
                        )
                    record.is_circuit_open = False
                    record.circuit_opened_at = None
                    record.consecutive_failures = 0
                    logger.info("deal_circuit_closed", deal_id=deal_id)

                if record.reset_date != today:
                    record.analysis_count_today = 0
                    record.reset_date = today

                last_analysis_at = as_utc(record.last_analysis_at)
                if last_analysis_at is not None and now - last_analysis_at < self.min_interval:
                    await session.commit()
                    return RateLimitDecision(
                        allowed=False,
                        reason="Rate limit: maximum 1 analysis per hour per deal",
                        next_allowed_at=last_analysis_at + self.min_interval,
                    )

                if record.analysis_count_today >= self.max_per_day:
                    await session.commit()
                    return RateLimitDecision(
                        allowed=False,
                        reason=f"Rate limit: maximum {self.max_per_day} analyses per day per deal",
                        next_allowed_at=datetime.combine(
                            today + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc
                        ),
                    )

                record.last_analysis_at = now
                record.analysis_count_today += 1
                await session.commit()
                return RateLimitDecision(allowed=True)

        except SQLAlchemyError as e:
            logger.error("deal_rate_limit_check_failed", deal_id=deal_id, error=str(e))
            return RateLimitDecision(allowed=True)

    async def record_success(self, deal_id: str) -> None:
        """Reset the failure streak and close the deal circuit."""
        async with self.session_factory() as session:
            record = await self._get_or_create(session, deal_id)
            record.consecutive_failures = 0
            record.is_circuit_open = False
            record.circuit_opened_at = None
            await session.commit()

    async def record_failure(self, deal_id: str) -> int:
        """
        Extend the failure streak, opening the deal circuit at the threshold.

        Returns:
            The new consecutive failure count.
        """
        async with self.session_factory() as session:
            record = await self._get_or_create(session, deal_id)
            record.consecutive_failures += 1
            if record.consecutive_failures >= self.failure_threshold and not record.is_circuit_open:
                record.is_circuit_open = True
                record.circuit_opened_at = self._clock()
                logger.warning(
                    "deal_circuit_opened",
                    deal_id=deal_id,
                    consecutive_failures=record.consecutive_failures,
                )
            failures = record.consecutive_failures
            await session.commit()
        return failures

    async def get(self, deal_id: str) -> Optional[DealRateLimit]:
        async with self.session_factory() as session:
            return await session.scalar(select(DealRateLimit).where(DealRateLimit.deal_id == deal_id))

    @staticmethod
    async def _get_or_create(session: AsyncSession, deal_id: str) -> DealRateLimit:
        record = await session.scalar(select(DealRateLimit).where(DealRateLimit.deal_id == deal_id))
        if record is None:
            record = DealRateLimit(deal_id=deal_id, analysis_count_today=0, consecutive_failures=0)
            session.add(record)
        return record
