"""
Async database engine and session factory.

Uses the SQLAlchemy 2.x async engine. The URL picks the driver:
``sqlite+aiosqlite://`` for a local file (the default) or
``postgresql+asyncpg://`` for a shared server.

CHANGELOG:
- 2026-10-18: Take the URL as an argument instead of reading the environment
- 2026-10-18: Initial creation (STORY-008)
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy async URL.

    Returns:
        AsyncEngine: Engine with connection liveness checks on checkout.
    """
    return create_async_engine(database_url, echo=False, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    Args:
        engine: The async engine.

    Returns:
        async_sessionmaker: Factory for creating AsyncSession instances.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def safe_url(database_url: str) -> str:
    """Render *database_url* with its password masked, for logging."""
    return make_url(database_url).render_as_string(hide_password=True)
