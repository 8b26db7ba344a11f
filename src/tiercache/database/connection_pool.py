"""
Fixed-size connection pool for the durable SQLite store.

Opens every handle eagerly at startup, tunes each one once for concurrent
writers, and hands them out through a bounded queue with an acquire timeout.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

logger = structlog.get_logger(__name__)


class PoolError(Exception):
    """Base class for connection pool errors."""


class PoolTimeout(PoolError):
    """No handle became free within the acquire timeout."""


class PoolClosedError(PoolError):
    """The pool has been shut down or was never initialized."""


@dataclass
class PoolConnection:
    """A pooled store handle and its bookkeeping."""
    connection_id: int
    handle: AsyncConnection
    in_use: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_used_at: Optional[datetime] = None
    use_count: int = 0


class ConnectionPool:
    """
    Pool of N long-lived SQLite connections.

    Usage:
        async with pool.connection() as conn:
            await conn.execute(text("SELECT 1"))
    """

    def __init__(
        self,
        database_url: str,
        size: int = 10,
        acquire_timeout: float = 5.0,
        busy_timeout_ms: int = 5000,
        statement_cache_size: int = 256,
        page_cache_kib: int = 16000,
        echo: bool = False,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")

        self.database_url = database_url
        self.size = size
        self.acquire_timeout = acquire_timeout
        self.busy_timeout_ms = busy_timeout_ms
        self.statement_cache_size = statement_cache_size
        self.page_cache_kib = page_cache_kib
        self.echo = echo

        self.engine: Optional[AsyncEngine] = None
        self._connections: List[PoolConnection] = []
        self._free: Optional[asyncio.Queue] = None
        self._closed = False

        self.stats = {
            'acquires': 0,
            'releases': 0,
            'timeouts': 0,
            'commits': 0,
            'rollbacks': 0,
            'total_wait_ms': 0.0,
            'max_wait_ms': 0.0,
        }

    @classmethod
    def from_settings(cls, settings) -> "ConnectionPool":
        """Build a pool from StoreSettings."""
        return cls(
            settings.get_database_url(),
            size=settings.pool_size,
            acquire_timeout=settings.acquire_timeout,
            busy_timeout_ms=settings.busy_timeout_ms,
            statement_cache_size=settings.statement_cache_size,
            page_cache_kib=settings.page_cache_kib,
        )

    @property
    def is_initialized(self) -> bool:
        return self.engine is not None and not self._closed

    @property
    def database_path(self) -> Optional[str]:
        """Filesystem path of the database, or None for in-memory stores."""
        if self.engine is None:
            return None
        database = self.engine.url.database
        if not database or database == ":memory:":
            return None
        return database

    def _configure_connection(self, dbapi_connection, connection_record) -> None:
        """Apply per-connection tuning once, when the DBAPI connection is opened."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA temp_store=MEMORY")
            # Negative value means KiB rather than pages
            cursor.execute(f"PRAGMA cache_size=-{int(self.page_cache_kib)}")
        finally:
            cursor.close()

    async def initialize(self) -> None:
        """Create the engine and open every handle up front."""
        if self.engine is not None:
            return

        try:
            self.engine = create_async_engine(
                self.database_url,
                echo=self.echo,
                poolclass=AsyncAdaptedQueuePool,
                pool_size=self.size,
                max_overflow=0,
                pool_timeout=self.acquire_timeout,
                connect_args={
                    "timeout": self.busy_timeout_ms / 1000,
                    "cached_statements": self.statement_cache_size,
                },
            )
            event.listen(self.engine.sync_engine, "connect", self._configure_connection)

            self._closed = False
            self._free = asyncio.Queue(maxsize=self.size)
            for connection_id in range(self.size):
                handle = await self.engine.connect()
                pooled = PoolConnection(connection_id=connection_id, handle=handle)
                self._connections.append(pooled)
                self._free.put_nowait(pooled)

            # Validate the first handle end to end
            async with self.connection() as conn:
                await conn.execute(text("SELECT 1"))

            logger.info("Connection pool initialized", size=self.size, database=self.database_path)

        except Exception as e:
            logger.error("Failed to initialize connection pool", error=str(e))
            await self._close_handles()
            raise

    async def acquire(self) -> PoolConnection:
        """
        Take a free handle, waiting up to ``acquire_timeout`` seconds.

        Raises:
            PoolClosedError: pool is not running
            PoolTimeout: no handle was released in time
        """
        if self._free is None or self._closed:
            raise PoolClosedError("Connection pool is not initialized")

        started = time.perf_counter()
        try:
            pooled = await asyncio.wait_for(self._free.get(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            self.stats['timeouts'] += 1
            logger.warning(
                "Connection pool acquire timed out",
                timeout=self.acquire_timeout,
                in_use=self.in_use_count,
            )
            raise PoolTimeout(
                f"No connection available after {self.acquire_timeout:.2f}s "
                f"({self.size} of {self.size} in use)"
            )

        waited_ms = (time.perf_counter() - started) * 1000
        self.stats['acquires'] += 1
        self.stats['total_wait_ms'] += waited_ms
        self.stats['max_wait_ms'] = max(self.stats['max_wait_ms'], waited_ms)

        pooled.in_use = True
        pooled.use_count += 1
        return pooled

    def release(self, pooled: PoolConnection) -> None:
        """Return a handle to the free queue."""
        if not pooled.in_use:
            logger.warning("Release of a connection that is not in use", connection_id=pooled.connection_id)
            return

        pooled.in_use = False
        pooled.last_used_at = datetime.utcnow()
        self.stats['releases'] += 1

        if self._closed or self._free is None:
            return
        self._free.put_nowait(pooled)

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[AsyncConnection, None]:
        """
        Borrow a handle for one unit of work.

        Commits when the block exits cleanly, rolls back otherwise, and
        always returns the handle to the pool.
        """
        pooled = await self.acquire()
        try:
            yield pooled.handle
            await pooled.handle.commit()
            self.stats['commits'] += 1
        except BaseException:
            if pooled.handle.in_transaction():
                await pooled.handle.rollback()
            self.stats['rollbacks'] += 1
            raise
        finally:
            self.release(pooled)

    @property
    def in_use_count(self) -> int:
        return sum(1 for c in self._connections if c.in_use)

    def get_pool_status(self) -> Dict[str, Any]:
        """Get connection pool status."""
        if self.engine is None:
            return {'status': 'not_initialized', 'size': self.size}

        acquires = self.stats['acquires']
        return {
            'status': 'closed' if self._closed else 'active',
            'size': self.size,
            'in_use': self.in_use_count,
            'free': self._free.qsize() if self._free is not None else 0,
            'avg_wait_ms': self.stats['total_wait_ms'] / acquires if acquires else 0.0,
            'connections': [
                {
                    'id': c.connection_id,
                    'in_use': c.in_use,
                    'use_count': c.use_count,
                    'last_used_at': c.last_used_at.isoformat() if c.last_used_at else None,
                }
                for c in self._connections
            ],
            'stats': dict(self.stats),
        }

    async def _close_handles(self) -> None:
        for pooled in self._connections:
            try:
                await pooled.handle.close()
            except Exception as e:
                logger.error("Error closing pooled connection", connection_id=pooled.connection_id, error=str(e))
        self._connections.clear()

        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None

    async def shutdown(self) -> None:
        """Close every handle and dispose of the engine."""
        if self.engine is None:
            return

        self._closed = True
        busy = self.in_use_count
        if busy:
            logger.warning("Shutting down pool with connections still in use", in_use=busy)

        await self._close_handles()
        self._free = None
        logger.info("Connection pool closed")
