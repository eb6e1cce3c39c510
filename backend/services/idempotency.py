"""
Idempotency Manager

Deduplicates operation invocations using caller-supplied keys stored in the
``idempotency_keys`` table. A record moves pending -> completed or
pending -> failed exactly once; a failed record may be superseded by a fresh
attempt after a cool-down.

The check is a best-effort duplicate suppressor: any storage error on it
fails open so the guard never blocks forward progress.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import IdempotencyKey, IdempotencyStatus, as_utc

logger = structlog.get_logger().bind(component="idempotency")

IN_PROGRESS_RESULT = {"error": "Operation in progress"}
RETRY_TOO_SOON_RESULT = {"error": "Retry too soon after failure"}


@dataclass
class IdempotencyCheck:
    """Result of an idempotency check."""

    exists: bool
    can_proceed: bool
    result: Any = None


class IdempotencyManager:
    """Pending/completed/failed lifecycle over the ``idempotency_keys`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        failed_retry_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.failed_retry_after = failed_retry_after or timedelta(
            minutes=settings.idempotency_failed_retry_minutes
        )
        self._clock = clock

    async def check_key(self, key: str, ttl_minutes: Optional[int] = None) -> IdempotencyCheck:
        """
        Check for an existing record and claim the key if there is none.

        Args:
            key: Idempotency key.
            ttl_minutes: Lifetime of a newly created record.

        Returns:
            ``can_proceed=True`` only for the caller that now owns the key.
        """
        ttl = timedelta(minutes=ttl_minutes or settings.idempotency_ttl_minutes)
        now = self._clock()

        try:
            async with self.session_factory() as session:
                # An expired record no longer counts; drop it so the key can be reclaimed
                await session.execute(
                    delete(IdempotencyKey).where(
                        IdempotencyKey.key == key,
                        IdempotencyKey.expires_at <= now,
                    )
                )
                record = await session.scalar(select(IdempotencyKey).where(IdempotencyKey.key == key))

                if record is None:
                    session.add(
                        IdempotencyKey(
                            key=key,
                            status=IdempotencyStatus.PENDING.value,
                            created_at=now,
                            expires_at=now + ttl,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Lost the race to a concurrent first check
                        await session.rollback()
                        logger.info("idempotency_key_claimed_concurrently", key=key)
                        return IdempotencyCheck(exists=True, can_proceed=False, result=IN_PROGRESS_RESULT)
                    return IdempotencyCheck(exists=False, can_proceed=True)

                await session.commit()
                status = IdempotencyStatus(record.status)

                if status is IdempotencyStatus.COMPLETED:
                    return IdempotencyCheck(exists=True, can_proceed=False, result=record.result)

                if status is IdempotencyStatus.PENDING:
                    return IdempotencyCheck(exists=True, can_proceed=False, result=IN_PROGRESS_RESULT)

                failed_at = as_utc(record.completed_at or record.created_at)
                if now <= failed_at + self.failed_retry_after:
                    return IdempotencyCheck(exists=True, can_proceed=False, result=RETRY_TOO_SOON_RESULT)

                return await self._supersede_failed(session, key, now, ttl)

        except SQLAlchemyError as e:
            logger.error("idempotency_check_failed", key=key, error=str(e))
            return IdempotencyCheck(exists=False, can_proceed=True)

    async def _supersede_failed(
        self,
        session: AsyncSession,
        key: str,
        now: datetime,
        ttl: timedelta,
    ) -> IdempotencyCheck:
        """Turn a failed record back into a pending one. Only one caller can win."""
        result = await session.execute(
            update(IdempotencyKey)
            .where(
                IdempotencyKey.key == key,
                IdempotencyKey.status == IdempotencyStatus.FAILED.value,
            )
            .values(
                status=IdempotencyStatus.PENDING.value,
                result=None,
                created_at=now,
                completed_at=None,
                expires_at=now + ttl,
            )
        )
        await session.commit()

        if result.rowcount == 1:
            logger.info("idempotency_retry_after_failure", key=key)
            return IdempotencyCheck(exists=False, can_proceed=True)
        return IdempotencyCheck(exists=True, can_proceed=False, result=IN_PROGRESS_RESULT)

    async def mark_completed(self, key: str, result: Any) -> bool:
        """
        Record the result of a pending operation.

        Returns:
            True if a pending record was updated.
        """
        return await self._finish(key, IdempotencyStatus.COMPLETED, result)

    async def mark_failed(self, key: str, error: Any) -> bool:
        """Record that a pending operation failed."""
        message = str(error) if error else "Operation failed"
        return await self._finish(key, IdempotencyStatus.FAILED, {"error": message})

    async def _finish(self, key: str, status: IdempotencyStatus, result: Any) -> bool:
        async with self.session_factory() as session:
            outcome = await session.execute(
                update(IdempotencyKey)
                .where(
                    IdempotencyKey.key == key,
                    IdempotencyKey.status == IdempotencyStatus.PENDING.value,
                )
                .values(status=status.value, result=result, completed_at=self._clock())
            )
            await session.commit()

        updated = outcome.rowcount == 1
        if not updated:
            logger.warning("idempotency_key_not_pending", key=key, status=status.value)
        return updated

    def generate_analysis_key(self, deal_id: str, operation: str, user_id: Optional[str] = None) -> str:
        """
        Build the key for an analysis operation.

        Repeated triggers by the same actor on the same UTC day collapse to one key.
        """
        day = self._clock().astimezone(timezone.utc).date().isoformat()
        return f"analysis:{operation}:{deal_id}:{user_id or 'system'}:{day}"

    async def cleanup(self) -> int:
        """Delete expired records. Returns the number deleted."""
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(delete(IdempotencyKey).where(IdempotencyKey.expires_at < now))
            await session.commit()
        logger.info("idempotency_keys_cleaned", deleted=result.rowcount)
        return result.rowcount or 0
