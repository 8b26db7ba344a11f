"""
Query cache and slow-query analyzer.

Wraps read queries in a cache-aside layer on top of the tiered cache,
times every execution, persists slow or failing executions grouped by a
normalized query pattern, and turns the grouped records into advisory
optimization suggestions. Suggestions are never applied automatically.
"""

import hashlib
import json
import re
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import func, inspect, insert, select, text
from sqlalchemy.exc import SQLAlchemyError

from ..caching.cache_manager import TieredCacheManager
from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector, MetricUnit
from .connection_pool import ConnectionPool
from .models import OptimizationSuggestion, QueryPerformance

QueryParams = Union[Mapping[str, Any], Sequence[Any], None]

_STRING_LITERAL = re.compile(r"'(%)?(?:[^']|'')*'")
_NUMBER_LITERAL = re.compile(r"\b\d+(?:\.\d+)?\b")
_WHITESPACE = re.compile(r"\s+")
_PAREN_GROUP = re.compile(r"\([^)]*\)")


class QueryType(str, Enum):
    """Query type enumeration."""
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CREATE = "create"
    DROP = "drop"
    ALTER = "alter"
    PRAGMA = "pragma"
    UNKNOWN = "unknown"


@dataclass
class QueryStats:
    """Query execution statistics (durations in milliseconds)."""
    query_hash: str
    query_type: QueryType
    query_pattern: str = ""
    execution_count: int = 0
    total_duration: float = 0.0
    min_duration: float = float('inf')
    max_duration: float = 0.0
    avg_duration: float = 0.0
    last_executed: Optional[datetime] = None
    error_count: int = 0
    rows_returned: int = 0
    slow_count: int = 0

    def update(self, duration: float, rows: int = 0, error: bool = False, slow: bool = False):
        """Update query statistics."""
        self.execution_count += 1
        self.total_duration += duration
        self.min_duration = min(self.min_duration, duration)
        self.max_duration = max(self.max_duration, duration)
        self.avg_duration = self.total_duration / self.execution_count
        self.last_executed = datetime.utcnow()
        self.rows_returned += rows

        if error:
            self.error_count += 1
        if slow:
            self.slow_count += 1


def normalize_query(sql: str) -> str:
    """
    Reduce a query to its structure.

    String and numeric literals become ``?``, whitespace collapses and the
    text is lower-cased. A string literal with a leading ``%`` becomes
    ``'%?'`` so leading-wildcard searches stay recognisable.
    """
    normalized = _STRING_LITERAL.sub(lambda m: "'%?'" if m.group(1) else '?', sql)
    normalized = _NUMBER_LITERAL.sub('?', normalized)
    normalized = _WHITESPACE.sub(' ', normalized)
    return normalized.strip().lower()


def query_hash(sql: str) -> str:
    """Hash identifying every query with the same normalized form."""
    return hashlib.md5(normalize_query(sql).encode()).hexdigest()


def extract_query_pattern(sql: str) -> str:
    """Compact, human-readable pattern: literals and parenthesised groups collapsed."""
    pattern = _WHITESPACE.sub(' ', sql)
    pattern = _STRING_LITERAL.sub('?', pattern)
    pattern = _NUMBER_LITERAL.sub('?', pattern)
    pattern = _PAREN_GROUP.sub('(?)', pattern)
    return pattern.strip()[:200]


def classify_query(sql: str) -> QueryType:
    """Classify query type."""
    first_word = sql.strip().split(None, 1)[0].lower() if sql.strip() else ''
    try:
        return QueryType(first_word)
    except ValueError:
        return QueryType.UNKNOWN


def extract_tables(sql: str) -> Set[str]:
    """Extract table names from query."""
    # Regex-based; good enough for grouping and index advice
    tables = set()
    query_lower = sql.lower()

    for pattern in (
        r'\bfrom\s+"?([a-z_][a-z0-9_]*)',
        r'\bjoin\s+"?([a-z_][a-z0-9_]*)',
        r'\bupdate\s+"?([a-z_][a-z0-9_]*)',
        r'\binto\s+"?([a-z_][a-z0-9_]*)',
    ):
        tables.update(re.findall(pattern, query_lower))

    tables.discard('select')
    return tables


_WHERE_CLAUSE = re.compile(r'\bwhere\b(.*?)(?=\border\s+by\b|\bgroup\s+by\b|\blimit\b|\)|$)', re.S)
_FILTER_COLUMN = re.compile(
    r'([a-z_][a-z0-9_]*(?:\.[a-z_][a-z0-9_]*)?)\s*(?:=|!=|<>|<=|>=|<|>|\blike\b|\bin\b|\bis\b|\bbetween\b)'
)
_SQL_WORDS = frozenset({'and', 'or', 'not', 'where', 'null', 'exists', 'select'})


def _where_columns(normalized: str) -> List[str]:
    columns: List[str] = []
    for clause in _WHERE_CLAUSE.findall(normalized):
        for column in _FILTER_COLUMN.findall(clause):
            column = column.split('.')[-1]
            if column not in _SQL_WORDS and column not in columns:
                columns.append(column)
    return columns


def _analyze(
    sql: str,
    indexed_columns: Optional[Mapping[str, Set[str]]] = None
) -> List[Tuple[str, str, str]]:
    """Return (suggestion_type, title, advice) findings for one query."""
    normalized = normalize_query(sql)
    tables = sorted(extract_tables(normalized))
    findings: List[Tuple[str, str, str]] = []

    if tables and ' where ' in f" {normalized} ":
        indexed_columns = indexed_columns or {}
        covered = set()
        for table in tables:
            covered.update(indexed_columns.get(table, ()))
        for column in _where_columns(normalized):
            if column in covered or column == 'rowid':
                continue
            table = tables[0]
            findings.append((
                'index',
                f"Missing index on {table}.{column}",
                f"WHERE filters on {column} without an index; consider "
                f"CREATE INDEX idx_{table}_{column} ON {table} ({column})"
            ))

    if re.search(r'\border\s+by\b', normalized) and not re.search(r'\blimit\b', normalized):
        findings.append((
            'query',
            "Unbounded sorted result",
            "ORDER BY without LIMIT sorts and returns the whole result set; add a LIMIT"
        ))

    if re.search(r'\bselect\s+(?:distinct\s+)?(?:[a-z_][a-z0-9_]*\.)?\*', normalized):
        findings.append((
            'query',
            "Wildcard projection",
            "SELECT * reads every column; list only the columns the caller needs"
        ))

    if re.search(r'\(\s*select\b', normalized):
        findings.append((
            'query',
            "Nested subquery",
            "Nested subquery may run once per outer row; consider rewriting it as a JOIN"
        ))

    if re.search(r"\blike\s+'%", normalized):
        findings.append((
            'query',
            "Leading-wildcard search",
            "LIKE with a leading wildcard cannot use an index; consider full-text search"
        ))

    return findings


def analyze_pattern(sql: str, indexed_columns: Optional[Mapping[str, Set[str]]] = None) -> List[str]:
    """
    Advisory strings for a query or query pattern.

    Args:
        sql: Query text (raw or normalized)
        indexed_columns: Table name to the set of columns that lead an index
    """
    return [advice for _, _, advice in _analyze(sql, indexed_columns)]


async def store_suggestion(
    pool: ConnectionPool,
    suggestion_type: str,
    title: str,
    description: str,
    impact_level: str = "medium",
    implementation_effort: str = "medium",
    expected_improvement: Optional[str] = None,
    code_example: Optional[str] = None,
) -> Optional[int]:
    """Persist a suggestion unless an identical one is still pending. Returns the new id."""
    async with pool.connection() as conn:
        existing = await conn.execute(
            select(OptimizationSuggestion.id).where(
                OptimizationSuggestion.suggestion_type == suggestion_type,
                OptimizationSuggestion.title == title,
                OptimizationSuggestion.description == description,
                OptimizationSuggestion.status == 'pending',
            ).limit(1)
        )
        if existing.first() is not None:
            return None

        result = await conn.execute(
            insert(OptimizationSuggestion).values(
                suggestion_type=suggestion_type,
                title=title,
                description=description,
                impact_level=impact_level,
                implementation_effort=implementation_effort,
                expected_improvement=expected_improvement,
                code_example=code_example,
                status='pending',
                created_at=datetime.utcnow(),
            )
        )
        return result.inserted_primary_key[0]


class QueryOptimizer:
    """Cache-aside query execution with slow-query tracking."""

    def __init__(
        self,
        pool: ConnectionPool,
        cache: TieredCacheManager,
        slow_query_threshold_ms: float = 100.0,
        cache_ttl: int = 300,
        cache_namespace: str = "query",
        slow_query_window_hours: int = 24,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.pool = pool
        self.cache = cache
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.cache_ttl = cache_ttl
        self.cache_namespace = cache_namespace
        self.slow_query_window_hours = slow_query_window_hours

        self.logger = get_logger(__name__, 'query_optimizer')
        self.metrics = metrics if metrics is not None else cache.metrics

        self.query_stats: Dict[str, QueryStats] = {}
        self.slow_queries: deque = deque(maxlen=100)
        self.table_access_patterns = defaultdict(set)

        self.stats = {
            'executions': 0,
            'cache_hits': 0,
            'cache_misses': 0,
            'slow_queries': 0,
            'errors': 0,
            'records_persisted': 0,
            'suggestions_generated': 0,
        }

    @classmethod
    def from_settings(
        cls, pool: ConnectionPool, cache: TieredCacheManager, settings, metrics: Optional[MetricsCollector] = None
    ) -> "QueryOptimizer":
        """Build an optimizer from QuerySettings."""
        return cls(
            pool,
            cache,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
            cache_ttl=settings.cache_ttl,
            cache_namespace=settings.cache_namespace,
            slow_query_window_hours=settings.slow_query_window_hours,
            metrics=metrics,
        )

    @staticmethod
    def default_cache_key(sql: str, params: QueryParams = None) -> str:
        params_blob = json.dumps(params, sort_keys=True, default=str) if params else ''
        return f"{query_hash(sql)}:{hashlib.md5(params_blob.encode()).hexdigest()}"

    async def cached_query(
        self,
        sql: str,
        params: QueryParams = None,
        cache_key: Optional[str] = None,
        ttl: Optional[int] = None,
        tags: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return rows for ``sql``, from the cache when possible.

        On a miss the query runs on a pooled connection and a non-empty
        result is cached under ``cache_key`` (default: hash of query and
        params), tagged with the tables it reads. Database errors and
        PoolTimeout propagate.
        """
        cache_key = cache_key or self.default_cache_key(sql, params)
        started = time.perf_counter()

        cached_rows = await self.cache.get(cache_key, self.cache_namespace)
        if cached_rows is not None:
            self.stats['cache_hits'] += 1
            self.metrics.get_histogram('query_cache_hit_duration_ms').observe(
                (time.perf_counter() - started) * 1000
            )
            return cached_rows

        self.stats['cache_misses'] += 1
        rows = await self.execute(sql, params)

        if rows:
            cache_tags = tags if tags is not None else ['query', *sorted(extract_tables(sql))]
            await self.cache.set(
                cache_key,
                rows,
                ttl=ttl or self.cache_ttl,
                tags=cache_tags,
                namespace=self.cache_namespace,
            )
        return rows

    async def execute(self, sql: str, params: QueryParams = None) -> List[Dict[str, Any]]:
        """
        Run ``sql`` uncached and track its latency.

        Mapping params bind ``:name`` placeholders; sequence params bind
        ``?`` placeholders. Returns result rows as dicts (empty for
        statements that return no rows).
        """
        started = time.perf_counter()
        try:
            async with self.pool.connection() as conn:
                if params is not None and not isinstance(params, Mapping):
                    result = await conn.exec_driver_sql(sql, tuple(params))
                else:
                    result = await conn.execute(text(sql), dict(params or {}))
                rows = [dict(row._mapping) for row in result] if result.returns_rows else []
        except SQLAlchemyError as e:
            duration_ms = (time.perf_counter() - started) * 1000
            await self.record_execution(sql, duration_ms, 0, error=e)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        await self.record_execution(sql, duration_ms, len(rows))
        return rows

    async def record_execution(
        self,
        sql: str,
        duration_ms: float,
        rows: int = 0,
        error: Optional[BaseException] = None,
    ) -> None:
        """Update statistics; persist the execution if it was slow or failed."""
        digest = query_hash(sql)
        query_type = classify_query(sql)
        slow = duration_ms >= self.slow_query_threshold_ms

        if digest not in self.query_stats:
            self.query_stats[digest] = QueryStats(
                query_hash=digest,
                query_type=query_type,
                query_pattern=extract_query_pattern(sql),
            )
        self.query_stats[digest].update(duration_ms, rows, error is not None, slow)

        self.stats['executions'] += 1
        for table in extract_tables(sql):
            self.table_access_patterns[table].add(digest)

        counter = self.metrics.get_counter('database_queries_total')
        counter.increment(1, query_type=query_type.value, status='error' if error else 'success')
        histogram = self.metrics.get_histogram('database_query_duration_ms', unit=MetricUnit.MILLISECONDS)
        histogram.observe(duration_ms, query_type=query_type.value)

        if error is not None:
            self.stats['errors'] += 1
            self.logger.error(f"Query failed after {duration_ms:.1f}ms: {error}", operation="execute",
                              query_hash=digest)
        if slow:
            self.stats['slow_queries'] += 1
            self.slow_queries.append({
                'query': sql[:500],
                'duration_ms': duration_ms,
                'timestamp': datetime.utcnow(),
                'rows': rows,
            })
            self.logger.warning(f"Slow query detected: {duration_ms:.1f}ms - {sql[:100]}", operation="execute",
                                query_hash=digest)

        if slow or error is not None:
            await self._persist_execution(sql, digest, duration_ms, rows, error)

    async def _persist_execution(
        self,
        sql: str,
        digest: str,
        duration_ms: float,
        rows: int,
        error: Optional[BaseException],
    ) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute(
                    insert(QueryPerformance).values(
                        query_hash=digest,
                        query_pattern=extract_query_pattern(sql),
                        normalized_query=normalize_query(sql)[:1000],
                        execution_time=duration_ms,
                        rows_examined=rows,
                        rows_returned=rows,
                        error=str(error) if error is not None else None,
                        recorded_at=datetime.utcnow(),
                    )
                )
            self.stats['records_persisted'] += 1
        except Exception as e:
            self.logger.error(f"Failed to record query performance: {e}", operation="persist_execution")

    async def get_indexed_columns(self) -> Dict[str, Set[str]]:
        """Map each table to the columns that lead an index or the primary key."""
        def _collect(sync_conn) -> Dict[str, Set[str]]:
            inspector = inspect(sync_conn)
            indexed: Dict[str, Set[str]] = {}
            for table in inspector.get_table_names():
                columns = set(inspector.get_pk_constraint(table).get('constrained_columns') or [])
                for index in inspector.get_indexes(table):
                    names = [c for c in index.get('column_names') or [] if c]
                    if names:
                        columns.add(names[0])
                for constraint in inspector.get_unique_constraints(table):
                    if constraint.get('column_names'):
                        columns.add(constraint['column_names'][0])
                indexed[table] = columns
            return indexed

        async with self.pool.connection() as conn:
            return await conn.run_sync(_collect)

    async def get_slow_queries(self, limit: int = 10, window_hours: Optional[int] = None) -> List[Dict[str, Any]]:
        """Persisted slow or failed executions, grouped by pattern, slowest first."""
        since = datetime.utcnow() - timedelta(hours=window_hours or self.slow_query_window_hours)
        avg_time = func.avg(QueryPerformance.execution_time)

        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(
                    QueryPerformance.query_hash,
                    func.max(QueryPerformance.query_pattern).label('query_pattern'),
                    func.max(QueryPerformance.normalized_query).label('normalized_query'),
                    avg_time.label('avg_time_ms'),
                    func.max(QueryPerformance.execution_time).label('max_time_ms'),
                    func.count(QueryPerformance.id).label('count'),
                    func.count(QueryPerformance.error).label('error_count'),
                )
                .where(QueryPerformance.recorded_at >= since)
                .group_by(QueryPerformance.query_hash)
                .order_by(avg_time.desc())
                .limit(limit)
            )
            return [dict(row._mapping) for row in result]

    async def generate_suggestions(self, limit: int = 10, persist: bool = True) -> List[Dict[str, Any]]:
        """
        Analyze grouped slow queries and produce optimization advice.

        Returns one item per query group that has findings. With ``persist``
        each finding is stored in ``optimization_suggestions`` (duplicates of
        pending suggestions are skipped).
        """
        slow_groups = await self.get_slow_queries(limit)
        if not slow_groups:
            return []

        indexed_columns = await self.get_indexed_columns()
        suggestions = []

        for group in slow_groups:
            findings = _analyze(group['normalized_query'] or group['query_pattern'], indexed_columns)
            if not findings:
                continue

            suggestions.append({
                'query_hash': group['query_hash'],
                'query_pattern': group['query_pattern'],
                'avg_time_ms': group['avg_time_ms'],
                'count': group['count'],
                'advice': [advice for _, _, advice in findings],
            })

            if persist:
                for suggestion_type, title, advice in findings:
                    created = await store_suggestion(
                        self.pool,
                        suggestion_type,
                        title,
                        advice,
                        impact_level='high' if suggestion_type == 'index' else 'medium',
                        implementation_effort='low',
                        expected_improvement=f"Average {group['avg_time_ms']:.1f}ms over {group['count']} runs",
                        code_example=group['query_pattern'],
                    )
                    if created is not None:
                        self.stats['suggestions_generated'] += 1

        self.logger.info(
            f"Generated advice for {len(suggestions)} slow query patterns",
            operation="generate_suggestions"
        )
        return suggestions

    def get_query_stats(self, limit: int = 10) -> List[Dict[str, Any]]:
        """In-process statistics for the slowest query patterns."""
        sorted_stats = sorted(
            self.query_stats.values(),
            key=lambda s: s.avg_duration,
            reverse=True
        )

        return [
            {
                'query_hash': stat.query_hash,
                'query_type': stat.query_type.value,
                'query_pattern': stat.query_pattern,
                'avg_duration_ms': stat.avg_duration,
                'max_duration_ms': stat.max_duration,
                'execution_count': stat.execution_count,
                'slow_count': stat.slow_count,
                'error_rate': stat.error_count / stat.execution_count if stat.execution_count > 0 else 0
            }
            for stat in sorted_stats[:limit]
        ]

    def get_stats(self) -> Dict[str, Any]:
        """Get optimizer statistics."""
        lookups = self.stats['cache_hits'] + self.stats['cache_misses']
        return {
            **self.stats,
            'cache_hit_rate': self.stats['cache_hits'] / lookups if lookups else 0,
            'tracked_patterns': len(self.query_stats),
            'slow_query_threshold_ms': self.slow_query_threshold_ms,
            'top_queries': self.get_query_stats(5),
        }
