"""
Two-tier caching for tiercache.

- In-process memory tier with priority-based eviction
- Durable SQLite tier that every write goes through
- Tag and pattern invalidation driven by stored rules
- Buffered per-operation analytics
"""

from .memory_tier import (
    CacheEntry,
    Compression,
    MemoryTier,
    Priority
)

from .persistent_store import PersistentStore

from .analytics import CacheAnalyticsRecorder

from .cache_manager import (
    CacheDiagnostic,
    CacheOptions,
    TieredCacheManager,
    cached,
    compress,
    decompress,
    generate_cache_key
)

from .invalidation import (
    CacheInvalidator,
    InvalidationRule
)

__all__ = [
    # Core classes
    'TieredCacheManager',
    'CacheOptions',
    'CacheDiagnostic',
    'MemoryTier',
    'CacheEntry',
    'PersistentStore',
    'CacheAnalyticsRecorder',

    # Enums
    'Priority',
    'Compression',

    # Invalidation
    'CacheInvalidator',
    'InvalidationRule',

    # Helpers
    'cached',
    'compress',
    'decompress',
    'generate_cache_key'
]
