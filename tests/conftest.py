"""
Shared fixtures: a file-backed SQLite store per test.

In-memory SQLite cannot be shared between the pooled connections, so every
test gets its own database file under tmp_path.
"""

import pytest
import pytest_asyncio

from tiercache.caching.cache_manager import TieredCacheManager
from tiercache.caching.memory_tier import MemoryTier
from tiercache.caching.persistent_store import PersistentStore
from tiercache.config import reset_settings
from tiercache.database.connection_pool import ConnectionPool


@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cache.db"


@pytest_asyncio.fixture
async def pool(db_path):
    """Initialized three-connection pool."""
    pool = ConnectionPool(f"sqlite+aiosqlite:///{db_path}", size=3, acquire_timeout=2.0)
    await pool.initialize()
    yield pool
    await pool.shutdown()


@pytest_asyncio.fixture
async def store(pool):
    """Persistent store with its schema created."""
    store = PersistentStore(pool)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def manager(store):
    """Cache manager with a 64 KiB memory tier."""
    return TieredCacheManager(store, memory=MemoryTier(64 * 1024))
