"""
Durable store layer.

Connection pool, schema, store maintenance and query analysis. The
query optimizer is imported last because it depends on the caching
package, which in turn uses the pool and models.
"""

from .connection_pool import (
    ConnectionPool,
    PoolClosedError,
    PoolConnection,
    PoolError,
    PoolTimeout
)

from .models import (
    Base,
    CacheAnalytics,
    CacheInvalidationRule,
    CacheRecord,
    MaintenanceLog,
    OptimizationSuggestion,
    PerformanceMetric,
    QueryPerformance
)

from .maintenance import (
    BackupError,
    MaintenanceError,
    MaintenanceResult,
    StoreMaintenance
)

from .query_optimizer import (
    QueryOptimizer,
    QueryStats,
    QueryType,
    analyze_pattern,
    normalize_query
)

__all__ = [
    # Connection pool
    'ConnectionPool',
    'PoolConnection',
    'PoolError',
    'PoolTimeout',
    'PoolClosedError',

    # Schema
    'Base',
    'CacheRecord',
    'CacheAnalytics',
    'CacheInvalidationRule',
    'QueryPerformance',
    'MaintenanceLog',
    'PerformanceMetric',
    'OptimizationSuggestion',

    # Maintenance
    'StoreMaintenance',
    'MaintenanceResult',
    'MaintenanceError',
    'BackupError',

    # Query analysis
    'QueryOptimizer',
    'QueryStats',
    'QueryType',
    'analyze_pattern',
    'normalize_query'
]
