"""
Kill Switch Manager

Global and per-engine boolean gates stored in ``kill_switches``. Reads go
through a short-lived in-process cache; the cached expiry is re-checked on
every read so an expired switch reports inactive even when served from cache.
Read errors fail open (inactive).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import KillSwitch, as_utc
from backend.services.cache import TTLCache

logger = structlog.get_logger().bind(component="kill_switch")

GLOBAL_ANALYSIS_SWITCH = "global_analysis"
QUEUE_PROCESSOR_SWITCH = "queue_processor"

# Switches flipped by an emergency shutdown
EMERGENCY_SWITCHES = (
    GLOBAL_ANALYSIS_SWITCH,
    "engine_enhanced_deal_analysis",
    "engine_document_processor",
    "engine_notes_intelligence",
    "engine_strategy_manager",
    QUEUE_PROCESSOR_SWITCH,
)


def engine_switch_name(engine_name: str) -> str:
    return f"engine_{engine_name}"


@dataclass
class KillSwitchState:
    """Snapshot of a kill switch row."""

    switch_name: str
    is_active: bool = False
    reason: Optional[str] = None
    activated_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        """Active and not past its expiry."""
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now

    @classmethod
    def from_row(cls, row: KillSwitch) -> "KillSwitchState":
        return cls(
            switch_name=row.switch_name,
            is_active=row.is_active,
            reason=row.reason,
            activated_by=row.activated_by,
            activated_at=as_utc(row.activated_at),
            expires_at=as_utc(row.expires_at),
        )


@dataclass
class EmergencyShutdownResult:
    success: bool
    activated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class KillSwitchManager:
    """Reads and writes kill switches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self._clock = clock
        self.cache = cache or TTLCache(
            ttl_seconds=settings.kill_switch_cache_ttl_seconds,
            max_entries=settings.kill_switch_cache_max_entries,
            clock=clock,
        )

    async def is_active(self, switch_name: str) -> bool:
        """Whether the switch is on. Store errors report inactive."""
        cached: Optional[KillSwitchState] = self.cache.get(switch_name)
        if cached is not None:
            return cached.is_effective(self._clock())

        try:
            state = await self.get_switch(switch_name)
        except SQLAlchemyError as e:
            logger.error("kill_switch_check_failed", switch_name=switch_name, error=str(e))
            return False

        state = state or KillSwitchState(switch_name=switch_name)
        self.cache.set(switch_name, state)
        return state.is_effective(self._clock())

    async def is_analysis_disabled(self) -> bool:
        return await self.is_active(GLOBAL_ANALYSIS_SWITCH)

    async def is_engine_disabled(self, engine_name: str) -> bool:
        return await self.is_active(engine_switch_name(engine_name))

    async def get_switch(self, switch_name: str) -> Optional[KillSwitchState]:
        """Read a switch straight from the store, bypassing the cache."""
        async with self.session_factory() as session:
            row = await session.scalar(select(KillSwitch).where(KillSwitch.switch_name == switch_name))
            return KillSwitchState.from_row(row) if row is not None else None

    async def activate(
        self,
        switch_name: str,
        reason: str,
        activated_by: str,
        ttl_hours: Optional[float] = None,
    ) -> bool:
        """
        Turn a switch on, creating it if needed.

        Args:
            switch_name: Switch to activate.
            reason: Why it was activated.
            activated_by: Who activated it.
            ttl_hours: Optional expiry; None keeps it on until deactivated.

        Returns:
            True if the switch was written.
        """
        now = self._clock()
        values = {
            "is_active": True,
            "reason": reason,
            "activated_by": activated_by,
            "activated_at": now,
            "expires_at": now + timedelta(hours=ttl_hours) if ttl_hours else None,
        }

        try:
            async with self.session_factory() as session:
                if not await self._update_switch(session, switch_name, values):
                    session.add(KillSwitch(switch_name=switch_name, **values))
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Created concurrently; overwrite it instead
                        await session.rollback()
                        await self._update_switch(session, switch_name, values)
        except SQLAlchemyError as e:
            logger.error("kill_switch_activate_failed", switch_name=switch_name, error=str(e))
            return False
        finally:
            self.cache.delete(switch_name)

        logger.warning(
            "kill_switch_activated",
            switch_name=switch_name,
            reason=reason,
            activated_by=activated_by,
            expires_at=values["expires_at"].isoformat() if values["expires_at"] else None,
        )
        return True

    async def deactivate(self, switch_name: str, deactivated_by: str) -> bool:
        """
        Turn a switch off.

        Returns:
            True if an existing switch was updated.
        """
        try:
            async with self.session_factory() as session:
                updated = await self._update_switch(
                    session,
                    switch_name,
                    {
                        "is_active": False,
                        "deactivated_by": deactivated_by,
                        "deactivated_at": self._clock(),
                    },
                )
        except SQLAlchemyError as e:
            logger.error("kill_switch_deactivate_failed", switch_name=switch_name, error=str(e))
            return False
        finally:
            self.cache.delete(switch_name)

        if updated:
            logger.info("kill_switch_deactivated", switch_name=switch_name, deactivated_by=deactivated_by)
        return updated

    @staticmethod
    async def _update_switch(session: AsyncSession, switch_name: str, values: dict) -> bool:
        result = await session.execute(
            update(KillSwitch).where(KillSwitch.switch_name == switch_name).values(**values)
        )
        await session.commit()
        return result.rowcount > 0

    async def emergency_shutdown(self, reason: str, activated_by: str) -> EmergencyShutdownResult:
        """Activate every emergency switch with a bounded expiry."""
        outcome = EmergencyShutdownResult(success=True)
        for switch_name in EMERGENCY_SWITCHES:
            if await self.activate(
                switch_name,
                reason,
                activated_by,
                ttl_hours=settings.emergency_shutdown_hours,
            ):
                outcome.activated.append(switch_name)
            else:
                outcome.failed.append(switch_name)

        outcome.success = not outcome.failed
        if outcome.success:
            logger.critical("emergency_shutdown_activated", reason=reason, activated_by=activated_by)
        else:
            logger.error("emergency_shutdown_partial", failed=outcome.failed)
        return outcome

    async def get_active_switches(self) -> list[KillSwitchState]:
        """All switches currently in effect."""
        now = self._clock()
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(KillSwitch).where(KillSwitch.is_active.is_(True)).order_by(KillSwitch.switch_name)
            )
            states = [KillSwitchState.from_row(row) for row in rows]
        return [state for state in states if state.is_effective(now)]

    async def cleanup_expired(self) -> int:
        """Deactivate switches past their expiry. Returns the number changed."""
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(KillSwitch)
                .where(
                    KillSwitch.is_active.is_(True),
                    KillSwitch.expires_at.is_not(None),
                    KillSwitch.expires_at < now,
                )
                .values(is_active=False, deactivated_by="system", deactivated_at=now)
            )
            await session.commit()
        self.clear_cache()
        logger.info("kill_switches_expired", deactivated=result.rowcount)
        return result.rowcount or 0

    def clear_cache(self) -> None:
        self.cache.clear()
