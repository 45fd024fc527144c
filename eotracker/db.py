# eotracker/db.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg

from .errors import ConfigError
from .retry import retry_async

log = logging.getLogger(__name__)


class DatabasePool:
    """
    Owns one asyncpg pool. Created by the application's composition root and
    handed to whatever needs connections; initialization is lazy, timeout
    guarded and retried with backoff.
    """

    def __init__(
        self,
        dsn: Optional[str],
        *,
        min_size: int = 1,
        max_size: int = 5,
        connect_timeout: float = 10.0,
        init_retries: int = 3,
        init_retry_delay: float = 1.0,
    ):
        if not dsn:
            raise ConfigError("DATABASE_URL is not set")
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.connect_timeout = connect_timeout
        self.init_retries = init_retries
        self.init_retry_delay = init_retry_delay
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    async def _create(self) -> asyncpg.Pool:
        return await asyncio.wait_for(
            asyncpg.create_pool(self.dsn, min_size=self.min_size, max_size=self.max_size),
            timeout=self.connect_timeout,
        )

    async def init(self) -> asyncpg.Pool:
        async with self._lock:
            if self._pool is None:
                self._pool = await retry_async(
                    self._create,
                    retries=self.init_retries,
                    delay=self.init_retry_delay,
                    backoff=True,
                    retry_on=(OSError, asyncio.TimeoutError, asyncpg.PostgresError),
                    label="db pool init",
                )
                log.info("[db] pool ready (min=%d max=%d)", self.min_size, self.max_size)
        return self._pool

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            await self.init()
        return self._pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            yield conn

    async def health_check(self) -> bool:
        try:
            async with self.connection() as conn:
                return (await asyncio.wait_for(conn.fetchval("select 1"), timeout=self.connect_timeout)) == 1
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            log.warning("[db] health check failed: %s: %s", type(e).__name__, e)
            return False

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
