"""
Tests for the query cache and slow-query analyzer.
"""

import time
from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from tiercache.database.models import OptimizationSuggestion, QueryPerformance
from tiercache.database.query_optimizer import (
    QueryOptimizer,
    QueryType,
    analyze_pattern,
    classify_query,
    extract_query_pattern,
    extract_tables,
    normalize_query,
    query_hash,
)


@pytest_asyncio.fixture
async def articles(pool):
    """Small table to query against."""
    async with pool.connection() as conn:
        await conn.exec_driver_sql(
            "CREATE TABLE articles (id INTEGER PRIMARY KEY, niche TEXT, title TEXT, views INTEGER)"
        )
        await conn.exec_driver_sql(
            "INSERT INTO articles (niche, title, views) VALUES "
            "('tech', 'One', 10), ('tech', 'Two', 20), ('food', 'Three', 30)"
        )
    return "articles"


@pytest_asyncio.fixture
async def optimizer(pool, manager, articles):
    return QueryOptimizer(pool, manager, slow_query_threshold_ms=100.0)


class TestQueryText:
    """Test normalization and classification helpers."""

    def test_normalize_replaces_literals(self):
        a = normalize_query("SELECT * FROM articles  WHERE niche = 'tech' AND views > 10")
        b = normalize_query("select * from articles where niche = 'food' and views > 999")

        assert a == "select * from articles where niche = ? and views > ?"
        assert a == b
        assert query_hash("SELECT 1") == query_hash("select   2")

    def test_normalize_keeps_leading_wildcard(self):
        normalized = normalize_query("SELECT id FROM articles WHERE title LIKE '%rust%'")
        assert "like '%?'" in normalized

    def test_extract_query_pattern(self):
        pattern = extract_query_pattern("SELECT * FROM t WHERE id IN (1, 2, 3) AND name = 'x'")
        assert pattern == "SELECT * FROM t WHERE id IN (?) AND name = ?"
        assert len(extract_query_pattern("SELECT " + "a, " * 200 + "b FROM t")) == 200

    def test_classify_query(self):
        assert classify_query("  SELECT 1") == QueryType.SELECT
        assert classify_query("insert into t values (1)") == QueryType.INSERT
        assert classify_query("PRAGMA table_info(t)") == QueryType.PRAGMA
        assert classify_query("") == QueryType.UNKNOWN

    def test_extract_tables(self):
        tables = extract_tables("SELECT * FROM a JOIN b ON a.id = b.a_id WHERE a.x IN (SELECT y FROM c)")
        assert tables == {"a", "b", "c"}


class TestAnalyzePattern:
    """Test the heuristic advice for query patterns."""

    def test_missing_index(self):
        advice = analyze_pattern("SELECT id FROM articles WHERE niche = ? LIMIT 5")
        assert any("niche" in a and "CREATE INDEX" in a for a in advice)

    def test_indexed_column_not_flagged(self):
        advice = analyze_pattern(
            "SELECT id FROM articles WHERE niche = ? LIMIT 5",
            indexed_columns={"articles": {"id", "niche"}},
        )
        assert advice == []

    def test_order_by_without_limit(self):
        advice = analyze_pattern("SELECT id FROM articles ORDER BY views DESC")
        assert any("LIMIT" in a for a in advice)
        assert not any("LIMIT" in a for a in analyze_pattern("SELECT id FROM articles ORDER BY views LIMIT 3"))

    def test_wildcard_projection(self):
        assert any("SELECT *" in a for a in analyze_pattern("SELECT * FROM articles LIMIT 1"))

    def test_nested_subquery(self):
        advice = analyze_pattern(
            "SELECT id FROM articles WHERE id IN (SELECT article_id FROM views) LIMIT 1",
            indexed_columns={"articles": {"id"}, "views": {"article_id"}},
        )
        assert any("JOIN" in a for a in advice)

    def test_leading_wildcard(self):
        advice = analyze_pattern(
            "SELECT id FROM articles WHERE title LIKE '%rust' LIMIT 1",
            indexed_columns={"articles": {"title"}},
        )
        assert any("leading wildcard" in a for a in advice)

    def test_clean_query(self):
        assert analyze_pattern("SELECT id FROM articles WHERE id = ? LIMIT 1", {"articles": {"id"}}) == []


class TestQueryOptimizer:
    """Test cached and tracked query execution."""

    @pytest.mark.asyncio
    async def test_execute_with_named_and_positional_params(self, optimizer):
        named = await optimizer.execute("SELECT title FROM articles WHERE niche = :niche ORDER BY id",
                                        {"niche": "tech"})
        positional = await optimizer.execute("SELECT title FROM articles WHERE niche = ? ORDER BY id",
                                             ["tech"])

        assert named == [{"title": "One"}, {"title": "Two"}]
        assert positional == named
        assert optimizer.stats['executions'] == 2

    @pytest.mark.asyncio
    async def test_cached_query_touches_store_once(self, optimizer):
        sql = "SELECT id, title FROM articles WHERE niche = :niche ORDER BY id"

        with patch.object(optimizer, 'execute', wraps=optimizer.execute) as execute:
            started = time.perf_counter()
            first = await optimizer.cached_query(sql, {"niche": "tech"}, cache_key="k")
            first_ms = (time.perf_counter() - started) * 1000

            started = time.perf_counter()
            second = await optimizer.cached_query(sql, {"niche": "tech"}, cache_key="k")
            second_ms = (time.perf_counter() - started) * 1000

        assert first == second == [{"id": 1, "title": "One"}, {"id": 2, "title": "Two"}]
        assert execute.call_count == 1
        assert optimizer.stats['cache_hits'] == 1
        assert optimizer.stats['cache_misses'] == 1
        assert second_ms < first_ms

    @pytest.mark.asyncio
    async def test_default_key_distinguishes_params(self, optimizer):
        sql = "SELECT title FROM articles WHERE niche = :niche"
        tech = await optimizer.cached_query(sql, {"niche": "tech"})
        food = await optimizer.cached_query(sql, {"niche": "food"})

        assert len(tech) == 2
        assert food == [{"title": "Three"}]

    @pytest.mark.asyncio
    async def test_empty_result_not_cached(self, optimizer):
        sql = "SELECT title FROM articles WHERE niche = :niche"
        assert await optimizer.cached_query(sql, {"niche": "none"}) == []
        assert await optimizer.cached_query(sql, {"niche": "none"}) == []
        assert optimizer.stats['cache_hits'] == 0

    @pytest.mark.asyncio
    async def test_cached_rows_tagged_by_table(self, optimizer, manager):
        sql = "SELECT title FROM articles WHERE niche = :niche"
        await optimizer.cached_query(sql, {"niche": "tech"})

        await manager.invalidate_by_tags(["articles"])
        await optimizer.cached_query(sql, {"niche": "tech"})

        assert optimizer.stats['cache_misses'] == 2

    @pytest.mark.asyncio
    async def test_errors_propagate_and_are_recorded(self, optimizer, pool):
        with pytest.raises(OperationalError):
            await optimizer.cached_query("SELECT * FROM missing_table")

        assert optimizer.stats['errors'] == 1
        async with pool.connection() as conn:
            row = (await conn.execute(select(QueryPerformance.error))).first()
        assert "missing_table" in row.error

    @pytest.mark.asyncio
    async def test_slow_queries_persisted_and_grouped(self, pool, manager, articles):
        optimizer = QueryOptimizer(pool, manager, slow_query_threshold_ms=0.0)

        await optimizer.execute("SELECT * FROM articles WHERE niche = 'tech'")
        await optimizer.execute("SELECT * FROM articles WHERE niche = 'food'")

        slow = await optimizer.get_slow_queries()
        assert len(slow) == 1
        assert slow[0]['count'] == 2
        assert slow[0]['query_pattern'] == "SELECT * FROM articles WHERE niche = ?"
        assert optimizer.stats['slow_queries'] == 2

    @pytest.mark.asyncio
    async def test_fast_queries_not_persisted(self, optimizer, pool):
        await optimizer.execute("SELECT id FROM articles WHERE id = 1")

        async with pool.connection() as conn:
            count = (await conn.execute(select(func.count(QueryPerformance.id)))).scalar()
        assert count == 0

    @pytest.mark.asyncio
    async def test_generate_suggestions(self, pool, manager, articles):
        optimizer = QueryOptimizer(pool, manager, slow_query_threshold_ms=0.0)
        await optimizer.execute("SELECT * FROM articles WHERE niche = 'tech' ORDER BY views")

        suggestions = await optimizer.generate_suggestions()

        assert len(suggestions) == 1
        advice = " ".join(suggestions[0]['advice'])
        assert "niche" in advice
        assert "SELECT *" in advice
        assert "LIMIT" in advice

        async with pool.connection() as conn:
            titles = (await conn.execute(select(OptimizationSuggestion.title))).scalars().all()
        assert "Missing index on articles.niche" in titles

        # Pending suggestions are not duplicated
        before = optimizer.stats['suggestions_generated']
        await optimizer.generate_suggestions()
        assert optimizer.stats['suggestions_generated'] == before

    @pytest.mark.asyncio
    async def test_indexed_columns(self, optimizer):
        indexed = await optimizer.get_indexed_columns()
        assert "id" in indexed["articles"]
        assert "cache_key" in indexed["advanced_cache"]

    @pytest.mark.asyncio
    async def test_stats(self, optimizer):
        await optimizer.execute("SELECT id FROM articles")
        stats = optimizer.get_stats()

        assert stats['tracked_patterns'] == 1
        assert stats['top_queries'][0]['execution_count'] == 1
