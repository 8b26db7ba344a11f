"""
Durable store schema.

Cache entries, per-operation analytics, invalidation rules, query performance
records, maintenance history, performance metrics and optimization suggestions.
All timestamps are naive UTC.
"""
from datetime import datetime

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Index, Integer, JSON, LargeBinary, String, Text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CacheRecord(Base):
    """
    Durable copy of a cache entry.
    This table is the source of truth; the memory tier only accelerates it.
    """
    __tablename__ = "advanced_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(255), unique=True, nullable=False)
    cache_value = Column(LargeBinary, nullable=False)
    content_type = Column(String(50), default="json")
    size_bytes = Column(Integer, nullable=False, default=0)
    ttl_seconds = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    access_count = Column(Integer, default=0, nullable=False)
    last_accessed = Column(DateTime, default=datetime.utcnow)

    # JSON array of tag strings
    tags = Column(JSON, default=list, nullable=False)
    compression = Column(String(10), default="none", nullable=False)
    priority = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index('ix_advanced_cache_expires_at', 'expires_at'),
        Index('ix_advanced_cache_priority', 'priority'),
    )

    def __repr__(self):
        return f"<CacheRecord(key='{self.cache_key}', size={self.size_bytes}, expires_at={self.expires_at})>"


class CacheAnalytics(Base):
    """One row per cache operation (hit, miss, set, delete, evict)."""
    __tablename__ = "cache_analytics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cache_key = Column(String(255), nullable=False)
    operation = Column(String(20), nullable=False)
    response_time_ms = Column(Float)
    size_bytes = Column(Integer)
    ttl_seconds = Column(Integer)
    tags = Column(JSON, default=list)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_cache_analytics_timestamp', 'timestamp'),
        Index('ix_cache_analytics_operation', 'operation'),
    )


class CacheInvalidationRule(Base):
    """Maps trigger events to the tags and key pattern they invalidate."""
    __tablename__ = "cache_invalidation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_name = Column(String(100), unique=True, nullable=False)
    pattern = Column(Text, nullable=False)
    tags = Column(JSON, default=list, nullable=False)
    trigger_events = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class QueryPerformance(Base):
    """Slow or failed query executions, grouped by normalized pattern hash."""
    __tablename__ = "query_performance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    query_hash = Column(String(32), nullable=False)
    query_pattern = Column(Text, nullable=False)
    normalized_query = Column(Text)
    execution_time = Column(Float, nullable=False)
    rows_examined = Column(Integer, default=0)
    rows_returned = Column(Integer, default=0)
    error = Column(Text)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_query_performance_hash', 'query_hash'),
        Index('ix_query_performance_recorded_at', 'recorded_at'),
    )


class MaintenanceLog(Base):
    """History of backup, cleanup, vacuum, reindex and analyze runs."""
    __tablename__ = "db_maintenance_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_type = Column(String(50), nullable=False)
    table_name = Column(String(100))
    duration_ms = Column(Float)
    rows_affected = Column(Integer, default=0)
    size_before = Column(Integer)
    size_after = Column(Integer)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)
    performed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_db_maintenance_log_performed_at', 'performed_at'),
    )


class PerformanceMetric(Base):
    """Point-in-time application metric."""
    __tablename__ = "performance_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_type = Column(String(50), nullable=False)
    metric_name = Column(String(100), nullable=False)
    metric_value = Column(Float, nullable=False)
    unit = Column(String(20))
    tags = Column(JSON, default=dict)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('ix_performance_metrics_type_recorded', 'metric_type', 'recorded_at'),
    )


class OptimizationSuggestion(Base):
    """Advisory suggestion; never applied automatically."""
    __tablename__ = "optimization_suggestions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    suggestion_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    impact_level = Column(String(20), default="medium")
    implementation_effort = Column(String(20), default="medium")
    expected_improvement = Column(String(255))
    code_example = Column(Text)
    status = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    implemented_at = Column(DateTime)

    __table_args__ = (
        Index('ix_optimization_suggestions_status', 'status'),
    )


# Models whose rows age out under the retention window, with their timestamp column
RETENTION_TABLES = {
    CacheAnalytics: CacheAnalytics.timestamp,
    QueryPerformance: QueryPerformance.recorded_at,
    PerformanceMetric: PerformanceMetric.recorded_at,
    MaintenanceLog: MaintenanceLog.performed_at,
}
