"""
Performance monitor.

Records application metrics in the durable store, samples process memory,
wraps expensive async producers in the tiered cache and turns recent
measurements into optimization suggestions for operators.
"""

import asyncio
import platform
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil
from sqlalchemy import case, insert, select, update

from .caching.cache_manager import CacheOptions, TieredCacheManager
from .caching.memory_tier import Compression
from .database.connection_pool import ConnectionPool
from .database.models import OptimizationSuggestion, PerformanceMetric
from .database.query_optimizer import QueryOptimizer, store_suggestion
from .logging_config import get_logger
from .metrics_collector import MetricsCollector

SUGGESTION_STATUSES = ('pending', 'implemented', 'dismissed')

_IMPACT_ORDER = case(
    {'critical': 1, 'high': 2, 'medium': 3, 'low': 4},
    value=OptimizationSuggestion.impact_level,
    else_=5,
)


def format_uptime(seconds: float) -> str:
    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"


class PerformanceMonitor:
    """Collects performance metrics and produces optimization suggestions."""

    def __init__(
        self,
        pool: ConnectionPool,
        cache: TieredCacheManager,
        query_optimizer: Optional[QueryOptimizer] = None,
        high_memory_mb: float = 200.0,
        low_hit_rate: float = 0.6,
        avg_query_time_ms: float = 50.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.pool = pool
        self.cache = cache
        self.query_optimizer = query_optimizer
        self.high_memory_mb = high_memory_mb
        self.low_hit_rate = low_hit_rate
        self.avg_query_time_ms = avg_query_time_ms

        self.logger = get_logger(__name__, 'performance_monitor')
        self.metrics = metrics if metrics is not None else cache.metrics
        self.started_at = time.time()

        self.stats = {
            'metrics_recorded': 0,
            'suggestions_created': 0,
            'cached_calls': 0,
            'cached_call_hits': 0,
        }

    @classmethod
    def from_settings(
        cls,
        pool: ConnectionPool,
        cache: TieredCacheManager,
        query_optimizer: Optional[QueryOptimizer],
        settings,
    ) -> "PerformanceMonitor":
        """Build from MonitoringSettings."""
        return cls(
            pool,
            cache,
            query_optimizer,
            high_memory_mb=settings.high_memory_mb,
            low_hit_rate=settings.low_hit_rate,
            avg_query_time_ms=settings.avg_query_time_ms,
        )

    async def record_metric(
        self,
        metric_type: str,
        metric_name: str,
        value: float,
        unit: Optional[str] = None,
        tags: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Persist one metric value; returns its row id."""
        async with self.pool.connection() as conn:
            result = await conn.execute(
                insert(PerformanceMetric).values(
                    metric_type=metric_type,
                    metric_name=metric_name,
                    metric_value=float(value),
                    unit=unit,
                    tags=tags or {},
                    recorded_at=datetime.utcnow(),
                )
            )
        self.stats['metrics_recorded'] += 1
        return result.inserted_primary_key[0]

    async def record_memory_usage(self) -> Dict[str, float]:
        """Sample process memory into ``performance_metrics``."""
        sample = self.metrics.collect_process_metrics()

        await self.record_metric('memory_usage', 'rss', sample['rss_mb'], 'mb')
        await self.record_metric('memory_usage', 'vms', sample['vms_mb'], 'mb')
        await self.record_metric(
            'memory_usage', 'cache_tier', self.cache.memory.size_of() / 1024 / 1024, 'mb'
        )

        if sample['rss_mb'] > self.high_memory_mb:
            await self.create_suggestion(
                'memory',
                'High Memory Usage Detected',
                f"Memory usage is {sample['rss_mb']:.2f}MB. Consider memory optimization strategies.",
                impact_level='high',
                implementation_effort='medium',
                expected_improvement='Reduce memory usage by 20-30%',
                code_example='Lower TIERCACHE_CACHE_MAX_MEMORY_BYTES or shorten TTLs of large entries',
            )
        return sample

    async def cached_call(
        self,
        producer: Callable[[], Awaitable[Any]],
        cache_key: str,
        options: Optional[CacheOptions] = None,
    ) -> Any:
        """
        Return the cached result for ``cache_key`` or await ``producer`` and cache it.

        Falsy results are returned but not cached. Producer errors are
        recorded and re-raised.
        """
        options = options or CacheOptions(compression=Compression.GZIP, namespace='api')
        started = time.perf_counter()
        self.stats['cached_calls'] += 1

        cached_result = await self.cache.get(cache_key, options.namespace)
        if cached_result is not None:
            self.stats['cached_call_hits'] += 1
            await self.record_metric(
                'api_response', 'cached_api_time', (time.perf_counter() - started) * 1000, 'ms',
                {'cache_key': cache_key}
            )
            return cached_result

        try:
            result = await producer()
        except Exception as e:
            await self.record_metric(
                'api_response', 'api_error', (time.perf_counter() - started) * 1000, 'ms',
                {'cache_key': cache_key, 'error': str(e)}
            )
            raise

        await self.record_metric(
            'api_response', 'api_time', (time.perf_counter() - started) * 1000, 'ms',
            {'cache_key': cache_key}
        )
        if result:
            await self.cache.set(cache_key, result, options)
        return result

    async def invalidate_cache(self, tags: List[str]) -> int:
        """Invalidate by tags and record how many entries went."""
        try:
            invalidated = await self.cache.invalidate_by_tags(tags)
            await self.record_metric('cache', 'cache_invalidation', invalidated, 'count', {'tags': list(tags)})
            return invalidated
        except Exception as e:
            self.logger.error(f"Cache invalidation error: {e}", operation="invalidate_cache")
            return 0

    async def clear_all_cache(self) -> int:
        """Empty both cache tiers and record the count. Store errors propagate."""
        cleared = await self.cache.clear()
        await self.record_metric('cache', 'cache_clear_all', cleared, 'count')
        return cleared

    async def get_recent_metrics(self, hours: int = 1, metric_type: Optional[str] = None) -> List[Dict[str, Any]]:
        since = datetime.utcnow() - timedelta(hours=hours)
        stmt = (
            select(PerformanceMetric.__table__)
            .where(PerformanceMetric.recorded_at >= since)
            .order_by(PerformanceMetric.recorded_at.desc(), PerformanceMetric.id.desc())
        )
        if metric_type:
            stmt = stmt.where(PerformanceMetric.metric_type == metric_type)
        async with self.pool.connection() as conn:
            result = await conn.execute(stmt)
            return [dict(row._mapping) for row in result]

    async def create_suggestion(
        self,
        suggestion_type: str,
        title: str,
        description: str,
        impact_level: str = 'medium',
        implementation_effort: str = 'medium',
        expected_improvement: Optional[str] = None,
        code_example: Optional[str] = None,
    ) -> Optional[int]:
        """Store a suggestion unless the same one is already pending."""
        suggestion_id = await store_suggestion(
            self.pool,
            suggestion_type,
            title,
            description,
            impact_level=impact_level,
            implementation_effort=implementation_effort,
            expected_improvement=expected_improvement,
            code_example=code_example,
        )
        if suggestion_id is not None:
            self.stats['suggestions_created'] += 1
            self.logger.info(f"Optimization suggestion created: {title}", operation="create_suggestion",
                             suggestion_type=suggestion_type)
        return suggestion_id

    async def _analyze_query_performance(self) -> None:
        if self.query_optimizer is None:
            return

        query_stats = list(self.query_optimizer.query_stats.values())
        executions = sum(s.execution_count for s in query_stats)
        if not executions:
            return

        avg_query_time = sum(s.total_duration for s in query_stats) / executions
        slow = sum(s.slow_count for s in query_stats)

        if avg_query_time > self.avg_query_time_ms:
            await self.create_suggestion(
                'query',
                'Overall Query Performance Degradation',
                f"Average query time is {avg_query_time:.2f}ms. Consider database optimization.",
                implementation_effort='medium',
                expected_improvement='Improve average query time by 30-50%',
                code_example='Add indexes, optimize WHERE clauses, consider query restructuring',
            )

        if slow > executions * 0.2:
            await self.create_suggestion(
                'index',
                'Multiple Slow Queries Detected',
                f"{slow} of {executions} queries were slow. Database indexing may help.",
                impact_level='high',
                implementation_effort='low',
                expected_improvement='Reduce slow query count by 70-80%',
                code_example='CREATE INDEX idx_name ON table_name (column_name);',
            )

    async def _analyze_cache_efficiency(self) -> None:
        overall = self.cache.get_stats()['overall']
        if not overall['total_requests']:
            return

        if overall['hit_rate'] < self.low_hit_rate:
            await self.create_suggestion(
                'cache',
                'Low Cache Hit Rate',
                f"Cache hit rate is {overall['hit_rate'] * 100:.1f}%. "
                f"Consider increasing cache TTL or improving cache strategy.",
                implementation_effort='low',
                expected_improvement='Increase cache hit rate to 80%+',
                code_example='Increase cache TTL, invalidate by tag instead of clearing namespaces',
            )

    async def _analyze_memory_usage(self) -> None:
        samples = [
            m['metric_value'] for m in await self.get_recent_metrics(metric_type='memory_usage')
            if m['metric_name'] == 'rss'
        ]
        if not samples:
            return

        peak = max(samples)
        if peak > self.high_memory_mb * 0.75:
            await self.create_suggestion(
                'memory',
                'High Memory Usage Peak',
                f"Peak memory usage reached {peak:.2f}MB. Consider memory optimization.",
                implementation_effort='medium',
                expected_improvement='Reduce peak memory usage by 20-30%',
            )

        # Newest first; compare the latest five samples with the oldest five
        if len(samples) >= 5:
            recent_avg = sum(samples[:5]) / 5
            older_avg = sum(samples[-5:]) / 5
            if older_avg and recent_avg > older_avg * 1.2:
                await self.create_suggestion(
                    'memory',
                    'Memory Usage Growth Trend',
                    f"Memory usage increased by {(recent_avg / older_avg - 1) * 100:.1f}% recently. "
                    f"Possible memory leak.",
                    impact_level='high',
                    implementation_effort='high',
                    expected_improvement='Stop memory growth and reduce usage',
                )

    async def generate_optimization_suggestions(self) -> Dict[str, Any]:
        """Run every analysis; each one failing is logged and skipped."""
        before = self.stats['suggestions_created']
        query_advice: List[Dict[str, Any]] = []

        for analysis in (
            self._analyze_query_performance,
            self._analyze_cache_efficiency,
            self._analyze_memory_usage,
        ):
            try:
                await analysis()
            except Exception as e:
                self.logger.error(f"Optimization analysis {analysis.__name__} failed: {e}",
                                  operation="generate_optimization_suggestions")

        if self.query_optimizer is not None:
            try:
                query_advice = await self.query_optimizer.generate_suggestions()
            except Exception as e:
                self.logger.error(f"Slow query analysis failed: {e}", operation="generate_optimization_suggestions")

        return {
            'created': self.stats['suggestions_created'] - before,
            'query_advice': query_advice,
        }

    async def get_suggestions(self, status: str = 'pending', limit: int = 10) -> List[Dict[str, Any]]:
        """Suggestions in ``status``, most impactful first."""
        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(OptimizationSuggestion.__table__)
                .where(OptimizationSuggestion.status == status)
                .order_by(_IMPACT_ORDER, OptimizationSuggestion.created_at.desc())
                .limit(limit)
            )
            return [dict(row._mapping) for row in result]

    async def mark_suggestion(self, suggestion_id: int, status: str = 'implemented') -> bool:
        """Move a suggestion to ``implemented`` or ``dismissed``."""
        if status not in SUGGESTION_STATUSES:
            raise ValueError(f"Unknown suggestion status: {status}")

        values: Dict[str, Any] = {'status': status}
        if status == 'implemented':
            values['implemented_at'] = datetime.utcnow()

        async with self.pool.connection() as conn:
            result = await conn.execute(
                update(OptimizationSuggestion)
                .where(OptimizationSuggestion.id == suggestion_id)
                .values(**values)
            )
        return result.rowcount > 0

    def get_system_statistics(self) -> Dict[str, Any]:
        process = psutil.Process()
        memory = process.memory_info()
        uptime = time.time() - self.started_at

        return {
            'memory_usage': {
                'rss_mb': round(memory.rss / 1024 / 1024, 2),
                'vms_mb': round(memory.vms / 1024 / 1024, 2),
            },
            'cpu_percent': process.cpu_percent(),
            'threads': process.num_threads(),
            'uptime_seconds': round(uptime),
            'uptime_formatted': format_uptime(uptime),
            'python_version': platform.python_version(),
            'platform': platform.platform(),
        }

    async def get_dashboard(self) -> Dict[str, Any]:
        """Everything an operator needs on one page."""
        recent_metrics, store_counts, suggestions = await asyncio.gather(
            self.get_recent_metrics(),
            self.cache.store.count_entries(),
            self.get_suggestions(),
        )

        return {
            'recent_metrics': recent_metrics,
            'cache_statistics': {**self.cache.get_stats(), 'store': store_counts},
            'query_statistics': self.query_optimizer.get_stats() if self.query_optimizer else None,
            'pool_status': self.pool.get_pool_status(),
            'optimization_suggestions': suggestions,
            'system_statistics': self.get_system_statistics(),
            'live_metrics': self.metrics.snapshot(),
            'generated_at': datetime.utcnow().isoformat(),
        }
