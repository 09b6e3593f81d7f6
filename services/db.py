from __future__ import annotations
import logging

import asyncpg

from notifications import NotificationStore, PersistenceError

logger = logging.getLogger(__name__)


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 5) -> asyncpg.Pool:
    try:
        pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    except (asyncpg.PostgresError, OSError) as exc:
        raise PersistenceError(f"could not connect to database: {exc}") from exc
    logger.info("Database pool ready (min=%s, max=%s)", min_size, max_size)
    return pool


async def open_store(dsn: str, *, min_size: int = 1, max_size: int = 5) -> NotificationStore:
    """Create a pool, make sure the schema exists and wrap it in a store."""
    pool = await create_pool(dsn, min_size=min_size, max_size=max_size)
    store = NotificationStore(pool)
    try:
        await store.ensure_schema()
    except PersistenceError:
        await pool.close()
        raise
    return store
