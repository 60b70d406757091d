"""hookrelay database module.

- SQLAlchemy 2.x ORM models for the durable queue and audit trail
- Alembic migration configuration
- Async engine/session factory construction via psycopg

Engines and session factories are created explicitly and owned by the
application (see hookrelay.api.create_app), never held in module globals.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from hookrelay.db.models import Base

if TYPE_CHECKING:
    from hookrelay.core.config import DatabaseSettings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Ensure a PostgreSQL URL uses the async psycopg driver.

    Other dialects (e.g. sqlite+aiosqlite) are returned unchanged.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_engine_from_settings(database: DatabaseSettings) -> AsyncEngine:
    """Create the async engine described by the database settings.

    Raises:
        ValueError: If no database URL is configured.
    """
    if not database.url:
        msg = "Database URL is not configured"
        raise ValueError(msg)

    url = normalize_database_url(database.url)
    kwargs: dict[str, object] = {"echo": database.echo, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=database.pool_size,
            max_overflow=database.max_overflow,
            pool_timeout=database.pool_timeout,
        )

    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the engine."""
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet.

    Intended for development and tests; production schemas are managed by
    the Alembic migrations in hookrelay/db/migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


__all__ = [
    "create_engine_from_settings",
    "create_session_factory",
    "create_tables",
    "normalize_database_url",
]
