"""Database session management using SQLModel async."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Import all models so they are registered with SQLModel metadata
import berth.models  # noqa: F401
from berth.config import get_settings

logger = structlog.get_logger()

# Lazy initialization - engine created on first use
_engine = None
_async_session_factory = None


def _get_engine():
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database.url,
            echo=settings.database.echo,
            future=True,
        )
    return _engine


def _get_session_factory():
    """Get or create the async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


def _auto_migrate_sync(conn) -> None:
    """Add columns present in the models but missing from existing tables.

    ``create_all`` only creates new tables. Only additive changes are
    handled; renames, type changes and removals need a real migration.
    """
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    for table in SQLModel.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue

        existing_cols = {c["name"] for c in inspector.get_columns(table.name)}

        for col in table.columns:
            if col.name in existing_cols:
                continue

            col_type = col.type.compile(dialect=conn.dialect)
            # Added columns are always nullable; SQLite rejects NOT NULL
            # without a DEFAULT on ALTER TABLE.
            ddl = f"ALTER TABLE {table.name} ADD COLUMN {col.name} {col_type} NULL"
            logger.info(
                "db.auto_migrate.add_column",
                table=table.name,
                column=col.name,
                ddl=ddl,
            )
            conn.execute(text(ddl))


async def init_db() -> None:
    """Initialize database tables."""
    engine = _get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(_auto_migrate_sync)
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Close database connection."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get async database session as context manager.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(Model))
    """
    session_factory = _get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for getting database session."""
    async with get_async_session() as session:
        yield session
