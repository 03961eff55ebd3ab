"""
Engine and session plumbing for the ledger database.

One process-wide engine is built lazily from settings. Tests and tools that
need their own database build a factory with ``create_session_factory``.
"""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from myfamily_payments.config import Settings, get_settings
from myfamily_payments.database.models import Base

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """
    Keyword arguments for ``create_async_engine``.

    SQLite drivers reject pool sizing, so those options only apply to
    server databases.
    """
    options: dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_recycle=3600,
    )
    return options


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine``."""
    # Rows are read back after commit by the ledger and reconciler
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory for the process-wide engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Open a session wrapped in one transaction.

    Commits when the block exits normally and rolls back when it raises.

    Example:
        async with session_scope() as session:
            session.add(FamilyFund(family_id=7))
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        async with session.begin():
            yield session


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create any missing ledger tables. Production schemas come from alembic."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine so the next use starts fresh."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
