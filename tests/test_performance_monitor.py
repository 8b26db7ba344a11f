"""
Tests for the performance monitor and its optimization suggestions.
"""

import pytest
import pytest_asyncio

from tiercache.caching.cache_manager import CacheOptions
from tiercache.database.query_optimizer import QueryOptimizer
from tiercache.performance import PerformanceMonitor, format_uptime


@pytest_asyncio.fixture
async def monitor(pool, manager):
    optimizer = QueryOptimizer(pool, manager)
    return PerformanceMonitor(pool, manager, optimizer)


class TestPerformanceMonitor:
    """Test PerformanceMonitor against a real store."""

    def test_format_uptime(self):
        assert format_uptime(90061) == "1d 1h 1m 1s"

    @pytest.mark.asyncio
    async def test_record_metric(self, monitor):
        metric_id = await monitor.record_metric('api_response', 'api_time', 12.5, 'ms', {'route': '/x'})

        metrics = await monitor.get_recent_metrics()
        assert metric_id is not None
        assert metrics[0]['metric_value'] == 12.5
        assert metrics[0]['tags'] == {'route': '/x'}

    @pytest.mark.asyncio
    async def test_cached_call(self, monitor):
        calls = []

        async def producer():
            calls.append(1)
            return {"rows": [1, 2, 3]}

        first = await monitor.cached_call(producer, "dashboard")
        second = await monitor.cached_call(producer, "dashboard")

        assert first == second == {"rows": [1, 2, 3]}
        assert calls == [1]
        assert monitor.stats['cached_call_hits'] == 1
        names = [m['metric_name'] for m in await monitor.get_recent_metrics(metric_type='api_response')]
        assert sorted(names) == ['api_time', 'cached_api_time']

    @pytest.mark.asyncio
    async def test_cached_call_does_not_cache_empty_results(self, monitor):
        calls = []

        async def producer():
            calls.append(1)
            return []

        options = CacheOptions(ttl=60, namespace="api")
        await monitor.cached_call(producer, "empty", options)
        await monitor.cached_call(producer, "empty", options)
        assert calls == [1, 1]

    @pytest.mark.asyncio
    async def test_cached_call_propagates_errors(self, monitor):
        async def producer():
            raise ValueError("upstream down")

        with pytest.raises(ValueError):
            await monitor.cached_call(producer, "broken")

        names = [m['metric_name'] for m in await monitor.get_recent_metrics()]
        assert names == ['api_error']

    @pytest.mark.asyncio
    async def test_invalidate_cache(self, monitor, manager):
        await manager.set("a", 1, tags=["niche"])
        assert await monitor.invalidate_cache(["niche"]) == 2
        assert await manager.get("a") is None

    @pytest.mark.asyncio
    async def test_clear_all_cache(self, monitor, manager):
        await manager.set("a", 1)
        await manager.set("b", 2, namespace="api")

        assert await monitor.clear_all_cache() == 4
        assert await manager.get("a") is None
        assert await manager.get("b", "api") is None

        metrics = await monitor.get_recent_metrics(metric_type='cache')
        assert [(m['metric_name'], m['metric_value']) for m in metrics] == [('cache_clear_all', 4)]

    @pytest.mark.asyncio
    async def test_record_memory_usage_suggests_on_high_memory(self, monitor):
        monitor.high_memory_mb = 0.0
        sample = await monitor.record_memory_usage()

        assert sample['rss_mb'] > 0
        suggestions = await monitor.get_suggestions()
        assert any(s['title'] == 'High Memory Usage Detected' for s in suggestions)

    @pytest.mark.asyncio
    async def test_low_hit_rate_suggestion(self, monitor, manager):
        for key in ("a", "b", "c"):
            await manager.get(key)

        await monitor.generate_optimization_suggestions()

        titles = [s['title'] for s in await monitor.get_suggestions()]
        assert 'Low Cache Hit Rate' in titles

    @pytest.mark.asyncio
    async def test_query_degradation_suggestion(self, monitor):
        await monitor.query_optimizer.record_execution("SELECT * FROM articles", 80.0)
        await monitor.query_optimizer.record_execution("SELECT * FROM articles", 90.0)

        result = await monitor.generate_optimization_suggestions()

        titles = [s['title'] for s in await monitor.get_suggestions()]
        assert 'Overall Query Performance Degradation' in titles
        assert result['created'] >= 1

    @pytest.mark.asyncio
    async def test_suggestions_deduplicated_and_ordered(self, monitor):
        first = await monitor.create_suggestion('cache', 'Low', 'desc', impact_level='low')
        duplicate = await monitor.create_suggestion('cache', 'Low', 'desc', impact_level='low')
        await monitor.create_suggestion('index', 'Critical', 'desc', impact_level='critical')

        assert first is not None
        assert duplicate is None
        titles = [s['title'] for s in await monitor.get_suggestions()]
        assert titles == ['Critical', 'Low']

    @pytest.mark.asyncio
    async def test_mark_suggestion(self, monitor):
        suggestion_id = await monitor.create_suggestion('cache', 'Title', 'desc')

        assert await monitor.mark_suggestion(suggestion_id, 'implemented')
        assert await monitor.get_suggestions() == []
        implemented = await monitor.get_suggestions(status='implemented')
        assert implemented[0]['implemented_at'] is not None

        with pytest.raises(ValueError):
            await monitor.mark_suggestion(suggestion_id, 'bogus')
        assert not await monitor.mark_suggestion(9999, 'dismissed')

    @pytest.mark.asyncio
    async def test_dashboard(self, monitor, manager):
        await manager.set("a", 1)
        dashboard = await monitor.get_dashboard()

        assert dashboard['cache_statistics']['store']['live'] == 1
        assert dashboard['pool_status']['status'] == 'active'
        assert dashboard['system_statistics']['memory_usage']['rss_mb'] > 0
        assert dashboard['query_statistics']['executions'] == 0
        assert manager.metrics is monitor.metrics
        assert dashboard['live_metrics']['histograms']['cache_set_duration_ms']['count'] == 1
