"""
tiercache - multi-tier caching and database optimization for SQLite-backed services.
"""

__version__ = "0.1.0"

# The database package must load before caching; see database/__init__.py
from .database import ConnectionPool, PoolTimeout, QueryOptimizer, StoreMaintenance
from .caching import (
    CacheOptions,
    Compression,
    Priority,
    TieredCacheManager,
    cached
)
from .performance import PerformanceMonitor
from .scheduler import MaintenanceScheduler, ScheduledJob
from .runtime import CacheRuntime

__all__ = [
    'CacheRuntime',
    'TieredCacheManager',
    'CacheOptions',
    'Priority',
    'Compression',
    'cached',
    'ConnectionPool',
    'PoolTimeout',
    'QueryOptimizer',
    'StoreMaintenance',
    'PerformanceMonitor',
    'MaintenanceScheduler',
    'ScheduledJob'
]
