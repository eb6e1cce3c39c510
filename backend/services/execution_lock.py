"""
Execution Lock Manager

Distributed mutex for one deal's protected operation, implemented as a row in
``deal_execution_locks`` with a unique (deal_id, lock_type) constraint.
Acquisition is a single insert: a conflict means someone else holds the lock
and the caller should skip, never wait.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import DealExecutionLock, as_utc

logger = structlog.get_logger().bind(component="execution_lock")

ANALYSIS_LOCK = "analysis"


@dataclass
class LockResult:
    acquired: bool
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None


class ExecutionLockManager:
    """Acquire and release ``deal_execution_locks`` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.ttl = ttl or timedelta(hours=settings.execution_lock_ttl_hours)
        self._clock = clock

    async def acquire(
        self,
        deal_id: str,
        locked_by: str,
        lock_type: str = ANALYSIS_LOCK,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LockResult:
        """
        Try to take the lock once.

        An expired lock for the same key is removed first. Errors other than
        the unique-constraint conflict propagate.
        """
        now = self._clock()

        async with self.session_factory() as session:
            await session.execute(
                delete(DealExecutionLock).where(
                    DealExecutionLock.deal_id == deal_id,
                    DealExecutionLock.lock_type == lock_type,
                    DealExecutionLock.expires_at <= now,
                )
            )
            await session.commit()

            session.add(
                DealExecutionLock(
                    deal_id=deal_id,
                    lock_type=lock_type,
                    locked_by=locked_by,
                    locked_at=now,
                    expires_at=now + self.ttl,
                    extra_data={"acquired_at": now.isoformat(), **(metadata or {})},
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                holder = await session.scalar(
                    select(DealExecutionLock).where(
                        DealExecutionLock.deal_id == deal_id,
                        DealExecutionLock.lock_type == lock_type,
                    )
                )
                logger.info(
                    "execution_lock_contended",
                    deal_id=deal_id,
                    lock_type=lock_type,
                    held_by=holder.locked_by if holder else None,
                )
                return LockResult(
                    acquired=False,
                    locked_by=holder.locked_by if holder else None,
                    locked_at=as_utc(holder.locked_at) if holder else None,
                )

        logger.debug("execution_lock_acquired", deal_id=deal_id, lock_type=lock_type, locked_by=locked_by)
        return LockResult(acquired=True, locked_by=locked_by, locked_at=now)

    async def release(
        self,
        deal_id: str,
        lock_type: str = ANALYSIS_LOCK,
        locked_by: Optional[str] = None,
    ) -> bool:
        """
        Delete the lock row. Never raises; a leaked lock expires on its own.

        With ``locked_by`` only a row still held by that owner is deleted, so a
        holder that overran the TTL leaves its successor's lock in place.

        Returns:
            True if the delete statement succeeded.
        """
        conditions = [
            DealExecutionLock.deal_id == deal_id,
            DealExecutionLock.lock_type == lock_type,
        ]
        if locked_by is not None:
            conditions.append(DealExecutionLock.locked_by == locked_by)

        try:
            async with self.session_factory() as session:
                result = await session.execute(delete(DealExecutionLock).where(*conditions))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("execution_lock_release_failed", deal_id=deal_id, lock_type=lock_type, error=str(e))
            return False

        if locked_by is not None and not result.rowcount:
            logger.warning("execution_lock_not_owned", deal_id=deal_id, lock_type=lock_type, locked_by=locked_by)
        else:
            logger.debug("execution_lock_released", deal_id=deal_id, lock_type=lock_type)
        return True

    async def is_locked(self, deal_id: str, lock_type: str = ANALYSIS_LOCK) -> bool:
        async with self.session_factory() as session:
            lock = await session.scalar(
                select(DealExecutionLock).where(
                    DealExecutionLock.deal_id == deal_id,
                    DealExecutionLock.lock_type == lock_type,
                )
            )
        return lock is not None and as_utc(lock.expires_at) > self._clock()

    async def cleanup_expired(self) -> int:
        """Delete every expired lock row. Returns the number deleted."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DealExecutionLock).where(DealExecutionLock.expires_at <= self._clock())
            )
            await session.commit()
        logger.info("execution_locks_cleaned", deleted=result.rowcount)
        return result.rowcount or 0
