"""
Tests for the durable cache table and its bookkeeping tables.
"""

from datetime import datetime, timedelta

import pytest

from tiercache.caching.memory_tier import CacheEntry, Compression, Priority


def make_entry(key, value=b'{"v":1}', ttl=60, tags=(), now=None, **kwargs):
    now = now or datetime.utcnow()
    return CacheEntry(
        key=key,
        value=value,
        expires_at=now + timedelta(seconds=ttl),
        tags=tags,
        created_at=now,
        **kwargs
    )


class TestPersistentStore:
    """Test PersistentStore against a SQLite file."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store):
        await store.upsert(
            make_entry("ns:1", tags={"a", "b"}, priority=Priority.HIGH, compression=Compression.GZIP),
            ttl_seconds=60,
        )

        entry = await store.get("ns:1")

        assert entry.value == b'{"v":1}'
        assert entry.tags == frozenset({"a", "b"})
        assert entry.priority is Priority.HIGH
        assert entry.compression is Compression.GZIP
        assert entry.access_count == 1

    @pytest.mark.asyncio
    async def test_access_count_increments(self, store):
        await store.upsert(make_entry("ns:1"), ttl_seconds=60)
        await store.get("ns:1")
        entry = await store.get("ns:1")
        assert entry.access_count == 2

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, store):
        await store.upsert(make_entry("ns:1", value=b"1"), ttl_seconds=60)
        await store.upsert(make_entry("ns:1", value=b"22"), ttl_seconds=60)

        entry = await store.get("ns:1")
        assert entry.value == b"22"
        assert entry.size_bytes == 2
        assert await store.list_keys() == ["ns:1"]

    @pytest.mark.asyncio
    async def test_expired_rows_read_as_missing(self, store):
        now = datetime.utcnow()
        await store.upsert(make_entry("ns:old", ttl=1, now=now - timedelta(seconds=10)), ttl_seconds=1)

        assert await store.get("ns:old") is None
        assert await store.scan_expired() == ["ns:old"]
        assert await store.delete_expired() == 1
        assert await store.list_keys() == []

    @pytest.mark.asyncio
    async def test_delete_by_tags_exact_membership(self, store):
        await store.upsert(make_entry("ns:1", tags={"niche"}), ttl_seconds=60)
        await store.upsert(make_entry("ns:2", tags={"niche", "content"}), ttl_seconds=60)
        await store.upsert(make_entry("ns:3", tags={"nicheX"}), ttl_seconds=60)
        await store.upsert(make_entry("ns:4"), ttl_seconds=60)

        assert await store.delete_by_tags(["niche"]) == 2
        assert sorted(await store.list_keys()) == ["ns:3", "ns:4"]
        assert await store.delete_by_tags([]) == 0

    @pytest.mark.asyncio
    async def test_delete_by_prefix_escapes_wildcards(self, store):
        await store.upsert(make_entry("a_b:1"), ttl_seconds=60)
        await store.upsert(make_entry("axb:1"), ttl_seconds=60)

        assert await store.delete_by_prefix("a_b:") == 1
        assert await store.list_keys() == ["axb:1"]

    @pytest.mark.asyncio
    async def test_delete_keys(self, store):
        for key in ("k:1", "k:2", "k:3"):
            await store.upsert(make_entry(key), ttl_seconds=60)

        assert await store.delete_keys(["k:1", "k:3", "k:9"]) == 2
        assert await store.delete_keys([]) == 0
        assert await store.list_keys(prefix="k:") == ["k:2"]

    @pytest.mark.asyncio
    async def test_count_entries(self, store):
        now = datetime.utcnow()
        await store.upsert(make_entry("live", value=b"abc"), ttl_seconds=60)
        await store.upsert(make_entry("dead", value=b"de", ttl=1, now=now - timedelta(seconds=5)), ttl_seconds=1)

        counts = await store.count_entries()

        assert counts == {'total': 2, 'live': 1, 'expired': 1, 'size_bytes': 5}

    @pytest.mark.asyncio
    async def test_analytics_summary(self, store):
        now = datetime.utcnow()
        rows = [
            {'cache_key': 'k', 'operation': 'hit', 'response_time_ms': 2.0, 'size_bytes': 10,
             'ttl_seconds': None, 'tags': [], 'timestamp': now},
            {'cache_key': 'k', 'operation': 'hit', 'response_time_ms': 4.0, 'size_bytes': 10,
             'ttl_seconds': None, 'tags': [], 'timestamp': now},
            {'cache_key': 'k', 'operation': 'miss', 'response_time_ms': 1.0, 'size_bytes': 0,
             'ttl_seconds': None, 'tags': [], 'timestamp': now - timedelta(days=2)},
        ]
        assert await store.record_analytics(rows) == 3

        summary = await store.analytics_summary(now - timedelta(hours=1))

        assert summary == {'hit': {'count': 2, 'avg_response_time_ms': 3.0, 'total_bytes': 20}}

    @pytest.mark.asyncio
    async def test_invalidation_rules(self, store):
        await store.save_invalidation_rule("r1", "content:.*", ["content"], ["content_updated"])
        await store.save_invalidation_rule("r1", "changed:.*", ["x"], ["y"], replace=False)

        rules = await store.load_invalidation_rules()
        assert len(rules) == 1
        assert rules[0]['pattern'] == "content:.*"
        assert rules[0]['tags'] == ["content"]

        await store.save_invalidation_rule("r1", "content:.*", ["content"], ["content_updated"], is_active=False)
        assert await store.load_invalidation_rules() == []
        assert len(await store.load_invalidation_rules(active_only=False)) == 1
