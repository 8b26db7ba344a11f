"""
Tests for the two-tier cache manager.

Covers write-through reads, TTL expiry, tag and pattern invalidation,
eviction under memory pressure, compression and failure diagnostics.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest

from tiercache.caching.analytics import CacheAnalyticsRecorder
from tiercache.caching.cache_manager import (
    CacheOptions,
    TieredCacheManager,
    cached,
    compress,
    decompress,
    generate_cache_key,
)
from tiercache.caching.memory_tier import Compression, MemoryTier, Priority
from tiercache.config import CacheSettings
from tiercache.metrics_collector import MetricsCollector


class TestHelpers:
    """Test key generation and codecs."""

    def test_cache_key_is_namespaced_and_stable(self):
        key = generate_cache_key("user:1", "api")
        assert key.startswith("api:")
        assert len(key) == len("api:") + 16
        assert key == generate_cache_key("user:1", "api")
        assert key != generate_cache_key("user:1", "other")

    @pytest.mark.parametrize("value", [
        {"v": 1},
        [1, "two", None, 3.5],
        "plain string",
        {"nested": {"list": [1, 2, {"deep": True}]}},
    ])
    def test_decompress_inverts_compress(self, value):
        for codec in (Compression.GZIP, Compression.NONE):
            assert decompress(compress(value, codec), codec) == value

    def test_decompress_malformed_payload_returns_none(self):
        assert decompress(b"not gzip at all") is None
        assert decompress(b"\xff\xfe", Compression.NONE) is None

    def test_options_coercion(self):
        options = CacheOptions(priority=3, compression="gzip", tags=("a", "b"))
        assert options.priority is Priority.HIGH
        assert options.compression is Compression.GZIP
        assert options.tags == ["a", "b"]


class TestTieredCacheManager:
    """Test TieredCacheManager behaviour against a real store."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, manager):
        assert await manager.set("a", {"v": 1})
        assert await manager.get("a") == {"v": 1}
        assert manager.stats['memory_hits'] == 1

    @pytest.mark.asyncio
    async def test_write_through_survives_memory_clear(self, manager):
        await manager.set("a", {"v": 1}, ttl=60, tags=["niche"], compression=Compression.GZIP)
        manager.memory.clear()

        assert await manager.get("a") == {"v": 1}
        assert manager.stats['store_hits'] == 1
        # Rehydrated into memory on the store hit
        assert manager.memory.contains(generate_cache_key("a", "default"))

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, manager):
        await manager.set("a", {"v": 1}, ttl=1)
        await asyncio.sleep(1.1)
        assert await manager.get("a") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry_in_store_only(self, manager):
        await manager.set("a", {"v": 1}, ttl=1)
        manager.memory.clear()
        await asyncio.sleep(1.1)
        assert await manager.get("a") is None

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, manager):
        await manager.set("k", "one", namespace="first")
        await manager.set("k", "two", namespace="second")

        assert await manager.get("k", "first") == "one"
        assert await manager.get("k", "second") == "two"
        assert await manager.get("k") is None

    @pytest.mark.asyncio
    async def test_invalidate_by_tags(self, manager):
        await manager.set("b", {"v": 2}, tags=["niche"])
        await manager.set("c", {"v": 3}, tags=["niche"])
        await manager.set("d", {"v": 4}, tags=["content"])

        removed = await manager.invalidate_by_tags(["niche"])

        assert removed > 0
        assert await manager.get("b") is None
        assert await manager.get("c") is None
        assert await manager.get("d") == {"v": 4}

    @pytest.mark.asyncio
    async def test_tag_invalidation_is_exact_match(self, manager):
        await manager.set("x", 1, tags=["contentX"])
        await manager.set("y", 2, tags=["content"])
        manager.memory.clear()

        await manager.invalidate_by_tags(["content"])

        assert await manager.get("x") == 1
        assert await manager.get("y") is None

    @pytest.mark.asyncio
    async def test_invalidate_by_pattern(self, manager):
        await manager.set("1", "a", namespace="content")
        await manager.set("2", "b", namespace="content")
        await manager.set("1", "c", namespace="niche")

        await manager.invalidate_by_pattern("content:.*")

        assert await manager.get("1", "content") is None
        assert await manager.get("2", "content") is None
        assert await manager.get("1", "niche") == "c"

    @pytest.mark.asyncio
    async def test_clear_namespace(self, manager):
        await manager.set("a", 1, namespace="api")
        await manager.set("b", 2, namespace="api")
        await manager.set("a", 3, namespace="keep")

        assert await manager.clear_namespace("api") == 4  # memory + store
        assert await manager.get("a", "api") is None
        assert await manager.get("a", "keep") == 3

    @pytest.mark.asyncio
    async def test_delete(self, manager):
        await manager.set("a", 1)
        assert await manager.delete("a")
        assert await manager.get("a") is None
        assert not await manager.delete("a")

    @pytest.mark.asyncio
    async def test_high_priority_entry_evicts_low_priority(self, store):
        manager = TieredCacheManager(store, memory=MemoryTier(400))
        for i in range(4):
            await manager.set(f"low{i}", "x" * 80, priority=Priority.LOW)
        assert manager.memory.size_of() > 300

        await manager.set("vip", "y" * 150, priority=Priority.HIGH)

        vip_key = generate_cache_key("vip", "default")
        assert manager.stats['evictions'] >= 1
        assert manager.memory.contains(vip_key)
        assert manager.memory.size_of() == sum(e.size_bytes for e in manager.memory.entries())
        # Evicted entries are still served from the store
        for i in range(4):
            assert await manager.get(f"low{i}") == "x" * 80

    @pytest.mark.asyncio
    async def test_oversize_value_stays_store_only(self, store):
        manager = TieredCacheManager(store, memory=MemoryTier(64))

        assert await manager.set("big", "z" * 500)
        assert len(manager.memory) == 0
        assert await manager.get("big") == "z" * 500

    @pytest.mark.asyncio
    async def test_empty_memory_tier_is_kept(self, store):
        tier = MemoryTier(64)
        manager = TieredCacheManager(store, memory=tier)
        assert manager.memory is tier

        built = TieredCacheManager.from_settings(store, CacheSettings(max_memory_bytes=1024))
        assert built.memory.max_size_bytes == 1024

    @pytest.mark.asyncio
    async def test_slow_store_read_does_not_overwrite_newer_set(self, manager):
        await manager.set("k", "v0")
        manager.memory.clear()

        original_get = manager.store.get
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_get(*args, **kwargs):
            entry = await original_get(*args, **kwargs)
            started.set()
            await release.wait()
            return entry

        with patch.object(manager.store, 'get', side_effect=slow_get):
            reader = asyncio.create_task(manager.get("k"))
            await started.wait()
            await manager.set("k", "v1")
            release.set()
            assert await reader == "v1"

        assert await manager.get("k") == "v1"
        assert manager.stats['memory_hits'] == 1

    @pytest.mark.asyncio
    async def test_slow_store_read_does_not_resurrect_invalidated_entry(self, manager):
        await manager.set("b", {"v": 2}, tags=["niche"])
        manager.memory.clear()

        original_get = manager.store.get
        started, release = asyncio.Event(), asyncio.Event()

        async def slow_get(*args, **kwargs):
            entry = await original_get(*args, **kwargs)
            started.set()
            await release.wait()
            return entry

        with patch.object(manager.store, 'get', side_effect=slow_get):
            reader = asyncio.create_task(manager.get("b"))
            await started.wait()
            assert await manager.invalidate_by_tags(["niche"]) == 1
            release.set()
            await reader

        assert not manager.memory.contains(generate_cache_key("b", "default"))
        assert await manager.get("b") is None

    @pytest.mark.asyncio
    async def test_clear_empties_both_tiers(self, store):
        metrics = MetricsCollector()
        manager = TieredCacheManager(store, memory=MemoryTier(64 * 1024), metrics=metrics)
        await manager.set("a", 1)
        await manager.set("b", 2, namespace="other")

        assert await manager.clear() == 4  # memory + store
        assert len(manager.memory) == 0
        assert (await store.count_entries())['total'] == 0
        assert await manager.get("a") is None
        assert metrics.get_counter('cache_clears_total').get_value() == 1

    @pytest.mark.asyncio
    async def test_clear_propagates_store_failure(self, manager):
        await manager.set("a", 1)
        manager.store.delete_all = AsyncMock(side_effect=RuntimeError("disk gone"))

        with pytest.raises(RuntimeError):
            await manager.clear()
        assert len(manager.memory) == 0

    @pytest.mark.asyncio
    async def test_unserializable_value(self, manager):
        diagnostics = []
        manager.add_listener(diagnostics.append)

        assert await manager.set("bad", {"obj": object()}) is False
        assert manager.stats['corruptions'] == 1
        assert diagnostics[0].kind == 'serialize'

    @pytest.mark.asyncio
    async def test_corrupt_payload_reads_as_miss(self, manager):
        diagnostics = []
        manager.add_listener(diagnostics.append)
        await manager.set("a", {"v": 1}, compression=Compression.GZIP)

        entry = manager.memory.get(generate_cache_key("a", "default"))
        entry.value = b"garbage"

        assert await manager.get("a") is None
        assert manager.stats['misses'] == 1
        assert diagnostics[0].kind == 'decode'
        assert not manager.memory.contains(entry.key)

    @pytest.mark.asyncio
    async def test_store_failure_is_not_raised(self, manager):
        diagnostics = []
        manager.add_listener(diagnostics.append)
        manager.store.upsert = AsyncMock(side_effect=RuntimeError("disk gone"))
        manager.store.get = AsyncMock(side_effect=RuntimeError("disk gone"))

        assert await manager.set("a", 1) is False
        assert await manager.get("a") is None
        assert [d.kind for d in diagnostics] == ['store_write', 'store_read']
        assert manager.stats['errors'] == 2

    @pytest.mark.asyncio
    async def test_sweep_expired(self, manager):
        await manager.set("short", 1, ttl=1)
        await manager.set("long", 2, ttl=60)
        await asyncio.sleep(1.1)

        memory_removed, store_removed = await manager.sweep_expired()

        assert memory_removed == 1
        assert store_removed == 1
        assert await manager.get("long") == 2

    @pytest.mark.asyncio
    async def test_analytics_rows_recorded(self, store):
        analytics = CacheAnalyticsRecorder(store, batch_size=1000)
        manager = TieredCacheManager(store, memory=MemoryTier(4096), analytics=analytics)

        await manager.set("a", 1)
        await manager.get("a")
        await manager.get("missing")
        await manager.shutdown()

        summary = await store.analytics_summary(since=datetime.utcnow() - timedelta(minutes=5))
        assert summary['set']['count'] == 1
        assert summary['hit']['count'] == 1
        assert summary['miss']['count'] == 1

    @pytest.mark.asyncio
    async def test_stats_and_report(self, manager):
        await manager.set("a", 1)
        await manager.get("a")
        await manager.get("b")

        stats = manager.get_stats()
        assert stats['overall']['hit_rate'] == 0.5
        assert stats['overall']['total_requests'] == 2

        report = await manager.generate_report()
        assert report['hit_rate'] == 0.5
        assert report['store']['live'] == 1


class TestCachedDecorator:
    """Test the cached decorator."""

    @pytest.mark.asyncio
    async def test_caches_coroutine_result(self, manager):
        calls = []

        @cached(manager, ttl=60, tags=["profile"])
        async def load_profile(user_id):
            calls.append(user_id)
            return {"id": user_id}

        assert await load_profile(7) == {"id": 7}
        assert await load_profile(7) == {"id": 7}
        assert calls == [7]

        await manager.invalidate_by_tags(["profile"])
        await load_profile(7)
        assert calls == [7, 7]

    def test_rejects_sync_functions(self):
        with pytest.raises(TypeError):
            @cached(Mock(spec=TieredCacheManager))
            def not_async():
                return 1
