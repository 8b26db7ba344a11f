"""
Shared Configuration - Cache and Store Settings
Centralized configuration management for tiercache.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Durable store and connection pool settings
- Cache, query analysis and maintenance tuning
"""
from pathlib import Path
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreSettings(BaseSettings):
    """Durable store and connection pool settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_", env_file=".env", extra="ignore")

    # Full URL takes precedence over db_path when set
    database_url: Optional[str] = Field(None)
    db_path: str = Field("data/content.db")

    pool_size: int = Field(10)
    acquire_timeout: float = Field(5.0)
    busy_timeout_ms: int = Field(5000)
    statement_cache_size: int = Field(256)
    page_cache_kib: int = Field(16000)

    @field_validator("pool_size")
    @classmethod
    def validate_pool_size(cls, v):
        if v < 1:
            raise ValueError("Pool size must be at least 1")
        return v

    @field_validator("acquire_timeout")
    @classmethod
    def validate_acquire_timeout(cls, v):
        if v <= 0:
            raise ValueError("Acquire timeout must be positive")
        return v

    def get_database_url(self) -> str:
        """Get the complete database URL."""
        if self.database_url:
            return self.database_url

        return f"sqlite+aiosqlite:///{self.db_path}"


class CacheSettings(BaseSettings):
    """Memory tier and cache orchestrator settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_CACHE_", env_file=".env", extra="ignore")

    max_memory_bytes: int = Field(100 * 1024 * 1024)
    default_ttl: int = Field(3600)
    default_namespace: str = Field("default")
    analytics_enabled: bool = Field(True)
    analytics_batch_size: int = Field(100)

    @field_validator("max_memory_bytes")
    @classmethod
    def validate_max_memory(cls, v):
        if v <= 0:
            raise ValueError("Memory tier size must be positive")
        return v

    @field_validator("default_ttl")
    @classmethod
    def validate_default_ttl(cls, v):
        if v <= 0:
            raise ValueError("Default TTL must be positive")
        return v


class QuerySettings(BaseSettings):
    """Query cache and slow-query analyzer settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_QUERY_", env_file=".env", extra="ignore")

    slow_query_threshold_ms: float = Field(100.0)
    cache_ttl: int = Field(300)
    cache_namespace: str = Field("query")
    slow_query_window_hours: int = Field(24)

    @field_validator("slow_query_threshold_ms")
    @classmethod
    def validate_threshold(cls, v):
        if v < 0:
            raise ValueError("Slow query threshold cannot be negative")
        return v


class MaintenanceSettings(BaseSettings):
    """Maintenance scheduler and store upkeep settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_MAINTENANCE_", env_file=".env", extra="ignore")

    enabled: bool = Field(True)
    sweep_interval: int = Field(300)
    report_interval: int = Field(3600)
    analytics_flush_interval: int = Field(30)
    suggestion_interval: int = Field(3600)
    memory_sample_interval: int = Field(30)

    backup_dir: str = Field("data/backups")
    keep_backups: int = Field(10)
    retention_days: int = Field(90)

    @field_validator(
        "sweep_interval", "report_interval", "analytics_flush_interval",
        "suggestion_interval", "memory_sample_interval"
    )
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("Scheduler intervals must be positive")
        return v


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_", env_file=".env", extra="ignore")

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: str = Field("colored")
    log_file: Optional[str] = Field(None)
    configure_logging: bool = Field(False)

    # Performance monitor thresholds
    high_memory_mb: float = Field(200.0)
    low_hit_rate: float = Field(0.6)
    avg_query_time_ms: float = Field(50.0)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "colored", "standard"):
            raise ValueError("Log format must be one of json, colored, standard")
        return v


class Settings(BaseSettings):
    """Main settings."""

    model_config = SettingsConfigDict(env_prefix="TIERCACHE_", env_file=".env", extra="ignore")

    environment: Environment = Field(Environment.DEVELOPMENT)
    app_name: str = Field("tiercache")

    store: StoreSettings = Field(default_factory=StoreSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings, loading them from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None


# Configuration validation
def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate the configuration and return any errors.

    Returns:
        List of validation error messages
    """
    settings = settings or get_settings()
    errors = []

    url = settings.store.get_database_url()
    if not url.startswith("sqlite"):
        errors.append("Only SQLite database URLs are supported")

    if ":memory:" in url and settings.store.pool_size > 1:
        errors.append("In-memory SQLite cannot be shared across a pool of more than one connection")

    if settings.maintenance.keep_backups < 1:
        errors.append("At least one backup must be kept")

    if settings.maintenance.retention_days < 1:
        errors.append("Retention window must be at least one day")

    if settings.cache.analytics_batch_size < 1:
        errors.append("Analytics batch size must be at least 1")

    if settings.is_production() and settings.monitoring.log_level == LogLevel.DEBUG:
        errors.append("Debug logging should be disabled in production")

    return errors


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """
    Get a summary of the configuration.

    Returns:
        Dictionary with configuration summary
    """
    settings = settings or get_settings()
    return {
        "environment": settings.environment.value,
        "app_name": settings.app_name,
        "store": {
            "database": str(Path(settings.store.db_path)) if not settings.store.database_url else settings.store.database_url,
            "pool_size": settings.store.pool_size,
            "acquire_timeout": settings.store.acquire_timeout,
        },
        "cache": {
            "max_memory_bytes": settings.cache.max_memory_bytes,
            "default_ttl": settings.cache.default_ttl,
            "analytics_enabled": settings.cache.analytics_enabled,
        },
        "query": {
            "slow_query_threshold_ms": settings.query.slow_query_threshold_ms,
            "cache_ttl": settings.query.cache_ttl,
        },
        "maintenance": {
            "enabled": settings.maintenance.enabled,
            "sweep_interval": settings.maintenance.sweep_interval,
            "backup_dir": settings.maintenance.backup_dir,
            "retention_days": settings.maintenance.retention_days,
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level.value,
            "log_format": settings.monitoring.log_format,
        },
    }
