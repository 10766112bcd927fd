"""Database connection management for the context store.

Factory functions for SQLAlchemy async engines and session factories,
configured from DatabaseConfig. SQLite (aiosqlite) is the default driver;
any SQLAlchemy async URL works.

Example usage:
    >>> from agentcluster.config import DatabaseConfig
    >>> from agentcluster.database.connection import get_engine, get_session_factory
    >>>
    >>> engine = get_engine(DatabaseConfig(url="sqlite+aiosqlite:///context.db"))
    >>> SessionFactory = get_session_factory(engine)
    >>>
    >>> async with SessionFactory() as session:
    ...     result = await session.execute(select(TaskOutput))
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from agentcluster.config import DatabaseConfig
from agentcluster.database.models.base import Base


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create an async SQLAlchemy engine from database configuration.

    Args:
        config: Database configuration containing URL and SQL echo preference.

    Returns:
        Configured AsyncEngine instance.
    """
    return create_async_engine(config.url, echo=config.echo)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    Sessions use expire_on_commit=False so attributes stay readable after
    commit without lazy loads.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
