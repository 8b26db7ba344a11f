"""
Bounded in-process cache tier.

Holds serialized cache entries keyed by cache key, enforcing a byte-size
ceiling. Under pressure the lowest-priority, least-accessed entries are
evicted first. Every method is synchronous: capacity checks and size
counter updates happen without yielding to the event loop.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from ..logging_config import get_logger

DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024


class Priority(IntEnum):
    """Eviction priority; LOW goes first."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class Compression(str, Enum):
    """Codec applied to a serialized value."""
    NONE = "none"
    GZIP = "gzip"


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: bytes
    expires_at: datetime
    tags: FrozenSet[str] = frozenset()
    priority: Priority = Priority.LOW
    compression: Compression = Compression.NONE
    access_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_accessed: Optional[datetime] = None
    size_bytes: int = field(init=False)

    def __post_init__(self):
        self.tags = frozenset(self.tags)
        self.priority = Priority(self.priority)
        self.compression = Compression(self.compression)
        self.size_bytes = len(self.value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the cache entry is expired."""
        return (now or datetime.utcnow()) >= self.expires_at

    def touch(self, now: Optional[datetime] = None):
        """Update access information."""
        self.access_count += 1
        self.last_accessed = now or datetime.utcnow()


@dataclass
class PutResult:
    """Outcome of a memory tier insert."""
    stored: bool
    evicted: List[CacheEntry] = field(default_factory=list)


class MemoryTier:
    """Size-bounded map of cache key to entry."""

    def __init__(self, max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES):
        if max_size_bytes <= 0:
            raise ValueError("Memory tier size must be positive")

        self.max_size_bytes = max_size_bytes
        self._entries: Dict[str, CacheEntry] = {}
        self._current_size = 0
        self.logger = get_logger(__name__, 'memory_tier')

        self.stats = {
            'hits': 0,
            'misses': 0,
            'inserts': 0,
            'evictions': 0,
            'expired': 0,
            'rejections': 0,
        }

    def put(self, entry: CacheEntry, now: Optional[datetime] = None) -> PutResult:
        """
        Insert or replace an entry, evicting others if the tier is full.

        Expired entries and entries larger than the whole tier are rejected
        without touching existing entries.
        """
        now = now or datetime.utcnow()

        if entry.is_expired(now):
            self.stats['rejections'] += 1
            return PutResult(stored=False)

        if entry.size_bytes > self.max_size_bytes:
            self.stats['rejections'] += 1
            self.logger.debug(
                f"Entry too large for memory tier: {entry.key}",
                operation="put",
                size_bytes=entry.size_bytes,
                max_size_bytes=self.max_size_bytes
            )
            return PutResult(stored=False)

        previous = self._entries.pop(entry.key, None)
        if previous is not None:
            self._current_size -= previous.size_bytes

        evicted: List[CacheEntry] = []
        if self._current_size + entry.size_bytes > self.max_size_bytes:
            evicted = self._make_room(entry.size_bytes, now)

        self._entries[entry.key] = entry
        self._current_size += entry.size_bytes
        self.stats['inserts'] += 1

        return PutResult(stored=True, evicted=evicted)

    def _make_room(self, needed: int, now: datetime) -> List[CacheEntry]:
        """Free space for ``needed`` bytes; returns the entries evicted."""
        # Dead entries go first and do not count as evictions
        self.sweep_expired(now)

        evicted: List[CacheEntry] = []
        if self._current_size + needed <= self.max_size_bytes:
            return evicted

        candidates = sorted(
            self._entries.values(),
            key=lambda e: (e.priority, e.access_count)
        )
        for candidate in candidates:
            if self._current_size + needed <= self.max_size_bytes:
                break
            self._drop(candidate.key)
            evicted.append(candidate)

        self.stats['evictions'] += len(evicted)
        if evicted:
            self.logger.debug(
                f"Evicted {len(evicted)} entries from memory tier",
                operation="evict",
                freed_bytes=sum(e.size_bytes for e in evicted)
            )
        return evicted

    def _drop(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._current_size -= entry.size_bytes
        return entry

    def get(self, key: str, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        """Get a live entry, counting the access. Expired entries are removed."""
        entry = self._entries.get(key)
        if entry is None:
            self.stats['misses'] += 1
            return None

        now = now or datetime.utcnow()
        if entry.is_expired(now):
            self._drop(key)
            self.stats['expired'] += 1
            self.stats['misses'] += 1
            return None

        entry.touch(now)
        self.stats['hits'] += 1
        return entry

    def contains(self, key: str) -> bool:
        return key in self._entries

    def remove(self, key: str) -> bool:
        """Remove key from the tier."""
        return self._drop(key) is not None

    def remove_where(self, predicate: Callable[[CacheEntry], bool]) -> List[str]:
        """Remove every entry matching ``predicate``; returns removed keys."""
        doomed = [key for key, entry in self._entries.items() if predicate(entry)]
        for key in doomed:
            self._drop(key)
        return doomed

    def remove_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self._drop(key) is not None)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Drop every expired entry."""
        now = now or datetime.utcnow()
        removed = self.remove_where(lambda e: e.is_expired(now))
        self.stats['expired'] += len(removed)
        return len(removed)

    def size_of(self) -> int:
        """Bytes currently held."""
        return self._current_size

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def entries(self) -> List[CacheEntry]:
        return list(self._entries.values())

    def clear(self) -> None:
        """Clear all cache entries."""
        self._entries.clear()
        self._current_size = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get memory tier statistics."""
        total_requests = self.stats['hits'] + self.stats['misses']
        return {
            **self.stats,
            'entries': len(self._entries),
            'current_size_bytes': self._current_size,
            'max_size_bytes': self.max_size_bytes,
            'usage_percent': self._current_size / self.max_size_bytes * 100,
            'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
        }
