"""
Persistent store adapter for cache entries.

Thin async interface over the ``advanced_cache`` table and its companions.
Every call borrows one pooled connection and commits or rolls back as a unit.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import bindparam, case, delete, func, insert, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..database.connection_pool import ConnectionPool
from ..database.models import Base, CacheAnalytics, CacheInvalidationRule, CacheRecord
from .memory_tier import CacheEntry

logger = structlog.get_logger(__name__)

_DELETE_BY_TAGS = text(
    "DELETE FROM advanced_cache WHERE EXISTS ("
    "SELECT 1 FROM json_each(advanced_cache.tags) WHERE json_each.value IN :tags)"
).bindparams(bindparam("tags", expanding=True))


def _entry_from_row(row) -> CacheEntry:
    return CacheEntry(
        key=row.cache_key,
        value=row.cache_value,
        expires_at=row.expires_at,
        tags=frozenset(row.tags or ()),
        priority=row.priority,
        compression=row.compression,
        access_count=row.access_count,
        created_at=row.created_at,
        last_accessed=row.last_accessed,
    )


class PersistentStore:
    """Durable key/value table behind the memory tier."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    async def initialize(self) -> None:
        """Create tables that do not exist yet."""
        async with self.pool.connection() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Persistent store schema ready", tables=len(Base.metadata.tables))

    async def upsert(self, entry: CacheEntry, ttl_seconds: int, content_type: str = "json") -> None:
        """Insert or fully replace the row for ``entry.key``."""
        values = {
            'cache_key': entry.key,
            'cache_value': entry.value,
            'content_type': content_type,
            'size_bytes': entry.size_bytes,
            'ttl_seconds': ttl_seconds,
            'created_at': entry.created_at,
            'expires_at': entry.expires_at,
            'access_count': 0,
            'last_accessed': entry.created_at,
            'tags': sorted(entry.tags),
            'compression': entry.compression.value,
            'priority': int(entry.priority),
        }
        stmt = sqlite_insert(CacheRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CacheRecord.cache_key],
            set_={k: stmt.excluded[k] for k in values if k != 'cache_key'},
        )
        async with self.pool.connection() as conn:
            await conn.execute(stmt)

    async def get(self, cache_key: str, now: Optional[datetime] = None) -> Optional[CacheEntry]:
        """Fetch a live row and count the access. Expired rows read as missing."""
        now = now or datetime.utcnow()
        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(CacheRecord.__table__).where(
                    CacheRecord.cache_key == cache_key,
                    CacheRecord.expires_at > now,
                )
            )
            row = result.first()
            if row is None:
                return None

            await conn.execute(
                update(CacheRecord)
                .where(CacheRecord.cache_key == cache_key)
                .values(access_count=CacheRecord.access_count + 1, last_accessed=now)
            )

        entry = _entry_from_row(row)
        entry.touch(now)
        return entry

    async def delete(self, cache_key: str) -> bool:
        async with self.pool.connection() as conn:
            result = await conn.execute(delete(CacheRecord).where(CacheRecord.cache_key == cache_key))
        return result.rowcount > 0

    async def delete_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every row carrying at least one of ``tags`` (exact match)."""
        tags = list(tags)
        if not tags:
            return 0
        async with self.pool.connection() as conn:
            result = await conn.execute(_DELETE_BY_TAGS, {"tags": tags})
        return result.rowcount

    async def delete_by_prefix(self, prefix: str) -> int:
        async with self.pool.connection() as conn:
            result = await conn.execute(
                delete(CacheRecord).where(CacheRecord.cache_key.startswith(prefix, autoescape=True))
            )
        return result.rowcount

    async def delete_all(self) -> int:
        async with self.pool.connection() as conn:
            result = await conn.execute(delete(CacheRecord))
        logger.warning("All cache rows deleted", rows=result.rowcount)
        return result.rowcount

    async def delete_keys(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        async with self.pool.connection() as conn:
            result = await conn.execute(delete(CacheRecord).where(CacheRecord.cache_key.in_(keys)))
        return result.rowcount

    async def list_keys(self, prefix: Optional[str] = None) -> List[str]:
        stmt = select(CacheRecord.cache_key)
        if prefix:
            stmt = stmt.where(CacheRecord.cache_key.startswith(prefix, autoescape=True))
        async with self.pool.connection() as conn:
            result = await conn.execute(stmt)
            return list(result.scalars().all())

    async def scan_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        """Keys of rows whose expiry has passed."""
        now = now or datetime.utcnow()
        stmt = select(CacheRecord.cache_key).where(CacheRecord.expires_at <= now).order_by(CacheRecord.expires_at)
        if limit:
            stmt = stmt.limit(limit)
        async with self.pool.connection() as conn:
            result = await conn.execute(stmt)
            return list(result.scalars().all())

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        async with self.pool.connection() as conn:
            result = await conn.execute(delete(CacheRecord).where(CacheRecord.expires_at <= now))
        return result.rowcount

    async def count_entries(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Row counts and payload bytes, split into live and expired."""
        now = now or datetime.utcnow()
        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(
                    func.count(CacheRecord.id),
                    func.coalesce(func.sum(CacheRecord.size_bytes), 0),
                    func.coalesce(func.sum(case((CacheRecord.expires_at <= now, 1), else_=0)), 0),
                )
            )
            total, size_bytes, expired = result.one()

        return {
            'total': total,
            'live': total - expired,
            'expired': expired,
            'size_bytes': size_bytes,
        }

    async def record_analytics(self, rows: List[Dict[str, Any]]) -> int:
        """Bulk insert analytics rows."""
        if not rows:
            return 0
        async with self.pool.connection() as conn:
            await conn.execute(insert(CacheAnalytics), rows)
        return len(rows)

    async def analytics_summary(self, since: datetime) -> Dict[str, Dict[str, float]]:
        """Per-operation counts and latency since ``since``."""
        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(
                    CacheAnalytics.operation,
                    func.count(CacheAnalytics.id),
                    func.avg(CacheAnalytics.response_time_ms),
                    func.coalesce(func.sum(CacheAnalytics.size_bytes), 0),
                )
                .where(CacheAnalytics.timestamp >= since)
                .group_by(CacheAnalytics.operation)
            )
            rows = result.all()

        return {
            operation: {
                'count': count,
                'avg_response_time_ms': float(avg_ms or 0.0),
                'total_bytes': total_bytes,
            }
            for operation, count, avg_ms, total_bytes in rows
        }

    async def load_invalidation_rules(self, active_only: bool = True) -> List[Dict[str, Any]]:
        stmt = select(CacheInvalidationRule.__table__).order_by(CacheInvalidationRule.id)
        if active_only:
            stmt = stmt.where(CacheInvalidationRule.is_active.is_(True))
        async with self.pool.connection() as conn:
            result = await conn.execute(stmt)
            return [dict(row._mapping) for row in result]

    async def save_invalidation_rule(
        self,
        rule_name: str,
        pattern: str,
        tags: List[str],
        trigger_events: List[str],
        is_active: bool = True,
        replace: bool = True,
    ) -> None:
        """Insert a rule; with ``replace`` an existing rule of the same name is overwritten."""
        values = {
            'rule_name': rule_name,
            'pattern': pattern,
            'tags': list(tags),
            'trigger_events': list(trigger_events),
            'is_active': is_active,
            'created_at': datetime.utcnow(),
        }
        stmt = sqlite_insert(CacheInvalidationRule).values(**values)
        if replace:
            stmt = stmt.on_conflict_do_update(
                index_elements=[CacheInvalidationRule.rule_name],
                set_={k: stmt.excluded[k] for k in ('pattern', 'tags', 'trigger_events', 'is_active')},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[CacheInvalidationRule.rule_name])
        async with self.pool.connection() as conn:
            await conn.execute(stmt)
