"""
Database utilities for tenantgraph.

Provides:
- Async engine configuration
- Table creation and removal for a compiled schema
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from ..config import Settings, get_settings
from ..core.registry import SchemaRegistry

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(settings: Optional[Settings] = None, **options: Any) -> AsyncEngine:
    """
    Create the async engine for ``settings.database_url``.

    SQLite connections get ``PRAGMA foreign_keys=ON`` so referential
    actions are enforced like on PostgreSQL.
    """
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "echo": settings.sql_echo,
        "poolclass": AsyncAdaptedQueuePool,
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_timeout": settings.pool_timeout,
    }
    kwargs.update(options)
    engine = create_async_engine(settings.database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    logger.debug(f"Created {engine.dialect.name} engine")
    return engine


async def init_db(engine: AsyncEngine, registry: SchemaRegistry):
    """Initialize database (create tables)."""
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.create_all)


async def drop_db(engine: AsyncEngine, registry: SchemaRegistry):
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.drop_all)


async def close_db(engine: AsyncEngine):
    """Close database connections."""
    await engine.dispose()
