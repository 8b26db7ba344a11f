"""
Runtime wiring.

Builds every component from Settings in dependency order, owns their
lifecycle and registers the default maintenance jobs. Components, including
the metrics registry, are passed by reference; nothing here is a
process-wide singleton.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from .caching.cache_manager import TieredCacheManager
from .caching.invalidation import CacheInvalidator
from .caching.persistent_store import PersistentStore
from .config import Settings, get_settings
from .database.connection_pool import ConnectionPool
from .database.maintenance import StoreMaintenance
from .database.query_optimizer import QueryOptimizer
from .logging_config import LoggingConfig, get_logger
from .metrics_collector import MetricsCollector
from .performance import PerformanceMonitor
from .scheduler import MaintenanceScheduler, ScheduledJob


class CacheRuntime:
    """Owns the pool, both cache tiers and the services built on them."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = get_logger(__name__, 'runtime')

        self.metrics = MetricsCollector()

        self.pool = ConnectionPool.from_settings(settings.store)
        self.store = PersistentStore(self.pool)
        self.cache = TieredCacheManager.from_settings(self.store, settings.cache, self.metrics)
        self.invalidator = CacheInvalidator(self.cache, self.store, self.metrics)
        self.query_optimizer = QueryOptimizer.from_settings(self.pool, self.cache, settings.query, self.metrics)
        self.maintenance = StoreMaintenance.from_settings(self.pool, settings.maintenance, self.metrics)
        self.monitor = PerformanceMonitor.from_settings(
            self.pool, self.cache, self.query_optimizer, settings.monitoring
        )
        self.scheduler = MaintenanceScheduler(self.metrics)

        self.initialized = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheRuntime":
        return cls(settings or get_settings())

    def _register_default_jobs(self) -> None:
        maintenance = self.settings.maintenance
        jobs = [
            ScheduledJob('expired_sweep', maintenance.sweep_interval, self.cache.sweep_expired),
            ScheduledJob('cache_report', maintenance.report_interval, self.cache.generate_report),
            ScheduledJob('analytics_flush', maintenance.analytics_flush_interval, self.cache.analytics.flush),
            ScheduledJob(
                'optimization_suggestions',
                maintenance.suggestion_interval,
                self.monitor.generate_optimization_suggestions,
            ),
            ScheduledJob('memory_sample', maintenance.memory_sample_interval, self.monitor.record_memory_usage),
        ]
        for job in jobs:
            self.scheduler.register_job(job)

    async def initialize(self, start_scheduler: Optional[bool] = None) -> None:
        """Open the pool, create the schema, load rules and start the scheduler."""
        if self.initialized:
            return

        monitoring = self.settings.monitoring
        if monitoring.configure_logging:
            LoggingConfig.setup_logging(
                level=monitoring.log_level.value,
                format_type=monitoring.log_format,
                log_file=monitoring.log_file,
            )

        if not self.settings.store.database_url:
            Path(self.settings.store.db_path).parent.mkdir(parents=True, exist_ok=True)

        await self.pool.initialize()
        await self.store.initialize()
        await self.invalidator.load_rules()

        if start_scheduler is None:
            start_scheduler = self.settings.maintenance.enabled
        if start_scheduler:
            self._register_default_jobs()
            await self.scheduler.start()

        self.initialized = True
        self.logger.info("Cache runtime initialized", operation="initialize",
                         scheduler_running=self.scheduler.running)

    async def shutdown(self) -> None:
        """Stop jobs, flush analytics and close the pool, in that order."""
        if not self.initialized:
            return

        await self.scheduler.stop()
        try:
            await self.cache.shutdown()
        except Exception as e:
            self.logger.error(f"Error flushing cache analytics on shutdown: {e}", operation="shutdown")
        await self.pool.shutdown()

        self.initialized = False
        self.logger.info("Cache runtime shutdown completed", operation="shutdown")

    async def __aenter__(self) -> "CacheRuntime":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'cache': self.cache.get_stats(),
            'invalidation': self.invalidator.get_stats(),
            'queries': self.query_optimizer.get_stats(),
            'maintenance': self.maintenance.get_stats(),
            'scheduler': self.scheduler.get_stats(),
            'pool': self.pool.get_pool_status(),
            'metrics': self.metrics.snapshot(),
        }
