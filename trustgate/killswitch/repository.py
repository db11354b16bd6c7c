"""
Kill switch document storage.

One `system_settings` row holds the whole document. Writes are
compare-and-replace on the row version: a writer that read version N
only succeeds if the row is still at N, so no caller ever observes a
half-applied change and concurrent writers cannot lose each other's
updates.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustgate.db.models import SystemSetting
from trustgate.errors import ConflictError
from trustgate.killswitch.schemas import KillSwitchState

logger = structlog.get_logger(__name__)

STATE_KEY = "kill_switch_state"


class StaleVersionError(ConflictError):
    """The stored document moved past the version the writer read."""

    code = "stale_version"

    def __init__(self, key: str, expected_version: int):
        super().__init__(
            f"Optimistic lock failed for {key}: expected version {expected_version}",
            details={"key": key, "expected_version": expected_version},
        )
        self.expected_version = expected_version


class KillSwitchRepository:
    """Load and atomically replace the kill switch document."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], key: str = STATE_KEY):
        self.session_factory = session_factory
        self.key = key

    async def load(self) -> Optional[KillSwitchState]:
        async with self.session_factory() as session:
            result = await session.execute(select(SystemSetting).where(SystemSetting.key == self.key))
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return KillSwitchState.model_validate({**row.value, "version": row.version})

    async def replace(
        self, state: KillSwitchState, expected_version: int, actor: str, now: datetime,
    ) -> KillSwitchState:
        """Store `state` if the row is still at `expected_version` (0 = absent)."""
        document = state.model_dump(mode="json")
        async with self.session_factory() as session:
            if expected_version == 0:
                session.add(SystemSetting(
                    key=self.key, value=document, version=1, updated_at=now, updated_by=actor,
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    raise StaleVersionError(self.key, expected_version)
                new_version = 1
            else:
                result = await session.execute(
                    update(SystemSetting)
                    .where(and_(SystemSetting.key == self.key, SystemSetting.version == expected_version))
                    .values(value=document, version=expected_version + 1, updated_at=now, updated_by=actor)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise StaleVersionError(self.key, expected_version)
                await session.commit()
                new_version = expected_version + 1

        logger.debug("kill_switch_state_stored", version=new_version, actor=actor)
        return state.model_copy(update={"version": new_version})
