"""AsyncPG pool management for the backend.

The pool is owned by the application context; nothing here keeps a
module-level reference to it.
"""

from __future__ import annotations

from typing import Optional

import asyncpg

from chatwire.settings import settings


async def init_pool(dsn: Optional[str] = None) -> asyncpg.pool.Pool:
	target = dsn or settings.postgres_url
	return await asyncpg.create_pool(
		dsn=target,
		min_size=settings.postgres_min_pool_size,
		max_size=settings.postgres_max_pool_size,
		ssl="require" if settings.postgres_ssl else "disable",
	)


async def close_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	if pool is not None:
		await pool.close()
