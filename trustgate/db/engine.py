"""
Database wiring for the TrustGate processes.

One async engine per process (asyncpg in production, aiosqlite in tests).
Components receive the session factory and open short sessions per unit
of work; nothing here hands out sessions directly.
"""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from trustgate.config import settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory, created with its engine on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(
            settings.async_database_url, echo=settings.debug, pool_pre_ping=True,
        )
        _session_factory = async_sessionmaker(bind=_engine, expire_on_commit=False)
        logger.info("database_engine_created", environment=settings.environment)
    return _session_factory


async def init_db() -> None:
    """Create missing tables in development. Other environments migrate externally."""
    get_session_factory()
    if settings.environment.lower() != "development":
        logger.info("database_schema_external", environment=settings.environment)
        return

    import trustgate.db.models  # noqa: F401  register mappers on Base.metadata

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_created")


async def close_db() -> None:
    """Dispose the engine at shutdown."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
