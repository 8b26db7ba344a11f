"""
Two-tier cache orchestrator.

Coordinates the in-process memory tier with the durable store:
write-through on set, memory-first reads with rehydration from the store,
tag/pattern/namespace invalidation, optional gzip compression and
per-operation analytics.
"""

import asyncio
import contextlib
import dataclasses
import functools
import gzip
import hashlib
import json
import re
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit
from .analytics import CacheAnalyticsRecorder
from .memory_tier import CacheEntry, Compression, MemoryTier, Priority, PutResult
from .persistent_store import PersistentStore


@dataclass
class CacheOptions:
    """Per-call cache options."""
    ttl: int = 3600
    tags: List[str] = field(default_factory=list)
    priority: Priority = Priority.LOW
    compression: Compression = Compression.NONE
    namespace: str = "default"

    def __post_init__(self):
        self.priority = Priority(self.priority)
        self.compression = Compression(self.compression)
        self.tags = list(self.tags)


@dataclass
class CacheDiagnostic:
    """Internal failure that callers only observe as a miss or a False return."""
    kind: str  # serialize, decode, store_read, store_write, store_delete
    cache_key: str
    error: str
    timestamp: datetime = field(default_factory=datetime.utcnow)


DiagnosticListener = Callable[[CacheDiagnostic], None]


@dataclass
class _PendingRead:
    """A store read for one key that has not returned yet."""
    epoch: int
    overwritten: bool = False


def generate_cache_key(key: str, namespace: str = "default") -> str:
    """Namespaced key with a truncated sha256 digest of ``namespace:key``."""
    digest = hashlib.sha256(f"{namespace}:{key}".encode('utf-8')).hexdigest()[:16]
    return f"{namespace}:{digest}"


def _serialize(value: Any) -> bytes:
    return json.dumps(value, separators=(',', ':')).encode('utf-8')


def _encode(value: Any, codec: Compression) -> bytes:
    payload = _serialize(value)
    if Compression(codec) == Compression.GZIP:
        payload = gzip.compress(payload)
    return payload


def _decode(payload: bytes, codec: Compression) -> Any:
    if Compression(codec) == Compression.GZIP:
        payload = gzip.decompress(payload)
    return json.loads(payload.decode('utf-8'))


_DECODE_ERRORS = (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError, TypeError)


def compress(value: Any, codec: Compression = Compression.GZIP) -> bytes:
    """Serialize ``value`` to JSON and apply ``codec``."""
    return _encode(value, codec)


def decompress(payload: bytes, codec: Compression = Compression.GZIP) -> Optional[Any]:
    """Inverse of :func:`compress`. Malformed payloads yield None instead of raising."""
    try:
        return _decode(payload, codec)
    except _DECODE_ERRORS:
        return None


class TieredCacheManager:
    """Memory tier in front of a write-through durable store."""

    def __init__(
        self,
        store: PersistentStore,
        memory: Optional[MemoryTier] = None,
        analytics: Optional[CacheAnalyticsRecorder] = None,
        default_options: Optional[CacheOptions] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.memory = memory if memory is not None else MemoryTier()
        self.analytics = analytics if analytics is not None else CacheAnalyticsRecorder(store, enabled=False)
        self.default_options = default_options if default_options is not None else CacheOptions()
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.logger = get_logger(__name__, 'cache_manager')

        self._listeners: List[DiagnosticListener] = []

        # Store reads in flight, per cache key. Writes and deletes flag them;
        # bulk invalidations bump the epoch instead.
        self._pending_reads: Dict[str, List[_PendingRead]] = {}
        self._epoch = 0
        self._invalidations_running = 0

        self.stats = {
            'hits': 0,
            'misses': 0,
            'memory_hits': 0,
            'store_hits': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
            'invalidations': 0,
            'errors': 0,
            'corruptions': 0,
        }

    @classmethod
    def from_settings(
        cls, store: PersistentStore, settings, metrics: Optional[MetricsCollector] = None
    ) -> "TieredCacheManager":
        """Build a manager from CacheSettings."""
        return cls(
            store,
            memory=MemoryTier(settings.max_memory_bytes),
            analytics=CacheAnalyticsRecorder(
                store,
                batch_size=settings.analytics_batch_size,
                enabled=settings.analytics_enabled,
            ),
            default_options=CacheOptions(ttl=settings.default_ttl, namespace=settings.default_namespace),
            metrics=metrics,
        )

    # Diagnostics

    def add_listener(self, listener: DiagnosticListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: DiagnosticListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, cache_key: str, error: BaseException) -> None:
        if kind in ('decode', 'serialize'):
            self.stats['corruptions'] += 1
        else:
            self.stats['errors'] += 1

        diagnostic = CacheDiagnostic(kind=kind, cache_key=cache_key, error=f"{type(error).__name__}: {error}")
        for listener in list(self._listeners):
            try:
                listener(diagnostic)
            except Exception as e:
                self.logger.error(f"Cache diagnostic listener failed: {e}", operation="diagnostic")

    # Core operations

    def _resolve_options(self, options: Optional[CacheOptions], overrides: Dict[str, Any]) -> CacheOptions:
        base = options or self.default_options
        if overrides:
            return dataclasses.replace(base, **overrides)
        return dataclasses.replace(base)

    def _record_evictions(self, result: PutResult) -> None:
        for evicted in result.evicted:
            self.analytics.record(evicted.key, 'evict', 0.0, evicted.size_bytes, tags=evicted.tags)
        self.stats['evictions'] += len(result.evicted)

    def _mark_written(self, cache_key: str) -> None:
        for pending in self._pending_reads.get(cache_key, ()):
            pending.overwritten = True

    @contextlib.contextmanager
    def _invalidating(self):
        self._invalidations_running += 1
        try:
            yield
        finally:
            self._invalidations_running -= 1
            self._epoch += 1

    async def _read_store(self, cache_key: str, now: datetime) -> Optional[CacheEntry]:
        """
        Read ``cache_key`` from the store and rehydrate memory with it.

        If a write, delete or invalidation touched the key while the read was
        in flight, the row may be stale: memory is left alone and the current
        state is read again instead.
        """
        pending = _PendingRead(self._epoch)
        self._pending_reads.setdefault(cache_key, []).append(pending)
        try:
            entry = await self.store.get(cache_key, now)
        finally:
            reads = self._pending_reads[cache_key]
            reads.remove(pending)
            if not reads:
                del self._pending_reads[cache_key]

        if entry is None:
            return None

        if pending.overwritten or pending.epoch != self._epoch or self._invalidations_running:
            current = self.memory.get(cache_key, now)
            if current is not None:
                return current
            return await self.store.get(cache_key, now)

        self._record_evictions(self.memory.put(entry, now))
        return entry

    async def set(self, key: str, value: Any, options: Optional[CacheOptions] = None, **overrides) -> bool:
        """
        Store a value in both tiers.

        The durable write happens first; the memory insert may evict other
        entries or decline the value. Returns False only when the value
        cannot be serialized or the store write fails.

        Args:
            key: Raw key, hashed together with the namespace
            value: Any JSON-serializable value
            options: CacheOptions; keyword overrides apply on top
        """
        options = self._resolve_options(options, overrides)
        cache_key = generate_cache_key(key, options.namespace)
        started = time.perf_counter()

        try:
            payload = _encode(value, options.compression)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Cache serialization error for key {cache_key}: {e}", operation="set")
            self._emit('serialize', cache_key, e)
            return False

        now = datetime.utcnow()
        entry = CacheEntry(
            key=cache_key,
            value=payload,
            expires_at=now + timedelta(seconds=options.ttl),
            tags=frozenset(options.tags),
            priority=options.priority,
            compression=options.compression,
            created_at=now,
        )

        try:
            await self.store.upsert(entry, ttl_seconds=options.ttl)
        except Exception as e:
            self.logger.error(f"Cache store write error for key {cache_key}: {e}", operation="set")
            self._emit('store_write', cache_key, e)
            return False

        result = self.memory.put(entry, now)
        self._record_evictions(result)
        self._mark_written(cache_key)

        latency_ms = (time.perf_counter() - started) * 1000
        self.stats['sets'] += 1
        self.analytics.record(cache_key, 'set', latency_ms, entry.size_bytes, options.ttl, entry.tags)
        self.metrics.get_histogram('cache_set_duration_ms', unit=MetricUnit.MILLISECONDS).observe(latency_ms)
        await self.analytics.maybe_flush()

        self.logger.debug(
            f"Cache set: {cache_key}",
            operation="set",
            size_bytes=entry.size_bytes,
            in_memory=result.stored
        )
        return True

    async def get(self, key: str, namespace: Optional[str] = None) -> Optional[Any]:
        """
        Look a value up in memory, then in the store.

        Store hits are rehydrated into memory. Expired entries, corrupt
        payloads and store failures all read as None.
        """
        namespace = namespace or self.default_options.namespace
        cache_key = generate_cache_key(key, namespace)
        started = time.perf_counter()
        now = datetime.utcnow()

        entry = self.memory.get(cache_key, now)
        source = 'memory'

        if entry is None:
            source = 'store'
            try:
                entry = await self._read_store(cache_key, now)
            except Exception as e:
                self.logger.error(f"Cache store read error for key {cache_key}: {e}", operation="get")
                self._emit('store_read', cache_key, e)
                entry = None

        value = None
        if entry is not None:
            try:
                value = _decode(entry.value, entry.compression)
            except _DECODE_ERRORS as e:
                self.logger.warning(f"Corrupt cache payload for key {cache_key}: {e}", operation="get")
                self._emit('decode', cache_key, e)
                self.memory.remove(cache_key)
                entry = None

        latency_ms = (time.perf_counter() - started) * 1000
        if entry is None:
            self.stats['misses'] += 1
            self.analytics.record(cache_key, 'miss', latency_ms)
            self.metrics.get_counter('cache_misses_total').increment(1)
        else:
            self.stats['hits'] += 1
            self.stats[f'{source}_hits'] += 1
            self.analytics.record(cache_key, 'hit', latency_ms, entry.size_bytes, tags=entry.tags)
            self.metrics.get_counter('cache_hits_total').increment(1, tier=source)

        await self.analytics.maybe_flush()
        return value

    async def delete(self, key: str, namespace: Optional[str] = None) -> bool:
        """Delete one key from both tiers."""
        namespace = namespace or self.default_options.namespace
        cache_key = generate_cache_key(key, namespace)
        started = time.perf_counter()

        removed = self.memory.remove(cache_key)
        try:
            removed = await self.store.delete(cache_key) or removed
        except Exception as e:
            self.logger.error(f"Cache store delete error for key {cache_key}: {e}", operation="delete")
            self._emit('store_delete', cache_key, e)
        self._mark_written(cache_key)

        self.stats['deletes'] += 1
        self.analytics.record(cache_key, 'delete', (time.perf_counter() - started) * 1000)
        await self.analytics.maybe_flush()
        return removed

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry carrying any of ``tags`` from both tiers.

        Returns memory removals plus store removals, so an entry held in
        both tiers counts twice.
        """
        tag_set = frozenset(tags)
        if not tag_set:
            return 0

        store_removed = 0
        with self._invalidating():
            removed_keys = self.memory.remove_where(lambda e: not e.tags.isdisjoint(tag_set))
            try:
                store_removed = await self.store.delete_by_tags(tag_set)
            except Exception as e:
                self.logger.error(f"Cache tag invalidation failed in store: {e}", operation="invalidate_by_tags")
                self._emit('store_delete', ','.join(sorted(tag_set)), e)

        for cache_key in removed_keys:
            self.analytics.record(cache_key, 'delete', tags=tag_set)

        total = len(removed_keys) + store_removed
        self.stats['invalidations'] += total
        await self.analytics.maybe_flush()

        self.logger.info(
            f"Invalidated {total} cache entries by tags",
            operation="invalidate_by_tags",
            tags=sorted(tag_set),
            memory_removed=len(removed_keys),
            store_removed=store_removed
        )
        return total

    async def invalidate_by_pattern(self, pattern: str) -> int:
        """Remove entries whose cache key matches the regular expression ``pattern`` from the start."""
        regex = re.compile(pattern)

        store_removed = 0
        with self._invalidating():
            removed_keys = self.memory.remove_where(lambda e: regex.match(e.key) is not None)
            try:
                store_keys = [k for k in await self.store.list_keys() if regex.match(k)]
                store_removed = await self.store.delete_keys(store_keys)
            except Exception as e:
                self.logger.error(f"Cache pattern invalidation failed in store: {e}", operation="invalidate_by_pattern")
                self._emit('store_delete', pattern, e)

        total = len(removed_keys) + store_removed
        self.stats['invalidations'] += total
        self.logger.info(
            f"Invalidated {total} cache entries matching pattern",
            operation="invalidate_by_pattern",
            pattern=pattern
        )
        return total

    async def clear_namespace(self, namespace: str) -> int:
        """Clear all keys in a namespace."""
        prefix = f"{namespace}:"
        store_removed = 0
        with self._invalidating():
            removed_keys = self.memory.remove_where(lambda e: e.key.startswith(prefix))
            try:
                store_removed = await self.store.delete_by_prefix(prefix)
            except Exception as e:
                self.logger.error(f"Cache namespace clear failed in store: {e}", operation="clear_namespace")
                self._emit('store_delete', prefix, e)

        total = len(removed_keys) + store_removed
        self.stats['invalidations'] += total
        self.logger.info(f"Cleared {total} keys from namespace: {namespace}", operation="clear_namespace")
        return total

    async def clear(self) -> int:
        """
        Empty both tiers.

        Returns memory removals plus store removals. Unlike the other
        invalidations, a store failure propagates.
        """
        with self._invalidating():
            memory_removed = len(self.memory)
            self.memory.clear()
            store_removed = await self.store.delete_all()

        total = memory_removed + store_removed
        self.stats['invalidations'] += total
        self.metrics.get_counter('cache_clears_total').increment(1)
        self.logger.warning(
            f"Cleared all {total} cache entries",
            operation="clear",
            memory_removed=memory_removed,
            store_removed=store_removed
        )
        return total

    async def sweep_expired(self) -> Tuple[int, int]:
        """Drop expired entries from both tiers. Store errors propagate."""
        now = datetime.utcnow()
        memory_removed = self.memory.sweep_expired(now)
        store_removed = await self.store.delete_expired(now)

        if memory_removed or store_removed:
            self.logger.info(
                "Expired cache entries swept",
                operation="sweep_expired",
                memory_removed=memory_removed,
                store_removed=store_removed
            )
        return memory_removed, store_removed

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.stats['hits'] + self.stats['misses']
        memory_stats = self.memory.get_stats()

        return {
            'overall': {
                **self.stats,
                'total_requests': total_requests,
                'hit_rate': self.stats['hits'] / total_requests if total_requests > 0 else 0,
            },
            'memory': memory_stats,
            'memory_usage_percent': memory_stats['usage_percent'],
            'analytics': self.analytics.get_stats(),
        }

    async def generate_report(self, window: timedelta = timedelta(hours=1)) -> Dict[str, Any]:
        """Aggregate hit rate, memory usage and store contents, and log them."""
        stats = self.get_stats()
        report: Dict[str, Any] = {
            'generated_at': datetime.utcnow().isoformat(),
            'hit_rate': stats['overall']['hit_rate'],
            'total_requests': stats['overall']['total_requests'],
            'memory_usage_percent': stats['memory_usage_percent'],
            'memory_entries': stats['memory']['entries'],
            'evictions': stats['overall']['evictions'],
            'corruptions': stats['overall']['corruptions'],
        }

        try:
            report['store'] = await self.store.count_entries()
            report['operations'] = await self.store.analytics_summary(datetime.utcnow() - window)
        except Exception as e:
            self.logger.error(f"Failed to read store for cache report: {e}", operation="generate_report")
            report['store_error'] = str(e)

        self.logger.info(
            f"Cache report: hit rate {report['hit_rate']:.1%}, memory {report['memory_usage_percent']:.1f}%",
            operation="generate_report",
            report=report
        )
        return report

    async def shutdown(self) -> None:
        """Flush pending analytics."""
        await self.analytics.flush()
        self.logger.info("Cache manager shutdown completed", operation="shutdown")


def cached(
    manager: TieredCacheManager,
    ttl: Optional[int] = None,
    tags: Optional[List[str]] = None,
    namespace: str = "default",
    key_func: Optional[Callable] = None,
):
    """Decorator caching the results of a coroutine function in ``manager``."""
    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("cached() only wraps coroutine functions")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            if key_func:
                cache_key = key_func(*args, **kwargs)
            else:
                key_parts = [func.__qualname__]
                key_parts.extend(str(arg) for arg in args)
                key_parts.extend(f"{k}={v}" for k, v in sorted(kwargs.items()))
                cache_key = ":".join(key_parts)

            cached_result = await manager.get(cache_key, namespace)
            if cached_result is not None:
                return cached_result

            result = await func(*args, **kwargs)
            overrides: Dict[str, Any] = {'namespace': namespace}
            if ttl is not None:
                overrides['ttl'] = ttl
            if tags is not None:
                overrides['tags'] = tags
            await manager.set(cache_key, result, **overrides)
            return result

        return wrapper

    return decorator
