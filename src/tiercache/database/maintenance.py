"""
Durable store maintenance.

Backup, retention cleanup, vacuum, reindex and analyze for the SQLite
store, each recorded in ``db_maintenance_log`` with before/after sizes,
plus the ordered full-optimization sequence.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiosqlite
from sqlalchemy import delete, insert, inspect, select

from ..logging_config import get_logger
from ..metrics_collector import MetricsCollector
from .connection_pool import ConnectionPool
from .models import RETENTION_TABLES, MaintenanceLog

BACKUP_PREFIX = "content_db_backup_"
BACKUP_SUFFIX = ".db"


class MaintenanceError(Exception):
    """A maintenance operation failed."""


class BackupError(MaintenanceError):
    """The backup could not be created."""


@dataclass
class MaintenanceResult:
    """Outcome of one maintenance operation."""
    operation: str
    success: bool
    duration_ms: float
    rows_affected: int = 0
    size_before: Optional[int] = None
    size_after: Optional[int] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'success': self.success,
            'duration_ms': self.duration_ms,
            'rows_affected': self.rows_affected,
            'size_before': self.size_before,
            'size_after': self.size_after,
            'error': self.error,
            **self.details,
        }


def format_bytes(size: int) -> str:
    """Format bytes to human readable."""
    for unit in ('Bytes', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.2f} {unit}" if unit != 'Bytes' else f"{size} {unit}"
        size /= 1024
    return f"{size:.2f} GB"


class StoreMaintenance:
    """Administrative operations on the durable store."""

    def __init__(
        self,
        pool: ConnectionPool,
        backup_dir: str = "data/backups",
        retention_days: int = 90,
        keep_backups: int = 10,
        database_path: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.pool = pool
        self.backup_dir = Path(backup_dir)
        self.retention_days = retention_days
        self.keep_backups = keep_backups
        self._database_path = database_path

        self.logger = get_logger(__name__, 'store_maintenance')
        self.metrics = metrics if metrics is not None else MetricsCollector()

        self.stats = {
            'operations': 0,
            'failures': 0,
            'backups_created': 0,
            'backups_rotated': 0,
            'rows_cleaned': 0,
        }

    @classmethod
    def from_settings(
        cls, pool: ConnectionPool, settings, metrics: Optional[MetricsCollector] = None
    ) -> "StoreMaintenance":
        """Build from MaintenanceSettings."""
        return cls(
            pool,
            backup_dir=settings.backup_dir,
            retention_days=settings.retention_days,
            keep_backups=settings.keep_backups,
            metrics=metrics,
        )

    @property
    def database_path(self) -> Optional[str]:
        return self._database_path or self.pool.database_path

    async def _file_size(self, path: Optional[str]) -> int:
        if not path:
            return 0
        try:
            return await asyncio.to_thread(os.path.getsize, path)
        except OSError:
            return 0

    async def database_size(self) -> int:
        """Size of the main database file plus its WAL."""
        path = self.database_path
        if not path:
            return 0
        return await self._file_size(path) + await self._file_size(f"{path}-wal")

    async def _log_operation(
        self,
        operation_type: str,
        duration_ms: float,
        rows_affected: int,
        size_before: Optional[int],
        size_after: Optional[int],
        status: str,
        error_message: Optional[str] = None,
        table_name: Optional[str] = None,
    ) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute(
                    insert(MaintenanceLog).values(
                        operation_type=operation_type,
                        table_name=table_name,
                        duration_ms=duration_ms,
                        rows_affected=rows_affected,
                        size_before=size_before,
                        size_after=size_after,
                        status=status,
                        error_message=error_message,
                        performed_at=datetime.utcnow(),
                    )
                )
        except Exception as e:
            self.logger.error(f"Failed to log maintenance operation {operation_type}: {e}",
                              operation="log_operation")

    async def _run(
        self,
        operation_type: str,
        action: Callable[[], Awaitable[Tuple[int, Dict[str, Any]]]],
        error_cls: type = MaintenanceError,
    ) -> MaintenanceResult:
        """Time ``action``, record it in the maintenance log and wrap failures."""
        started = time.perf_counter()
        size_before = await self.database_size()
        self.stats['operations'] += 1

        try:
            rows_affected, details = await action()
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self.stats['failures'] += 1
            await self._log_operation(operation_type, duration_ms, 0, size_before, size_before, 'failed', str(e))
            self.logger.error(f"Database {operation_type} failed: {e}", operation=operation_type)
            raise error_cls(f"{operation_type} failed: {e}") from e

        duration_ms = (time.perf_counter() - started) * 1000
        size_after = await self.database_size()
        await self._log_operation(operation_type, duration_ms, rows_affected, size_before, size_after, 'success')

        self.metrics.get_histogram('store_maintenance_duration_ms').observe(duration_ms, operation=operation_type)
        self.logger.info(
            f"Database {operation_type} completed in {duration_ms:.0f}ms "
            f"({format_bytes(size_before)} -> {format_bytes(size_after)})",
            operation=operation_type,
            rows_affected=rows_affected
        )
        return MaintenanceResult(
            operation=operation_type,
            success=True,
            duration_ms=duration_ms,
            rows_affected=rows_affected,
            size_before=size_before,
            size_after=size_after,
            details=details,
        )

    async def create_backup(self) -> MaintenanceResult:
        """
        Write an online backup of the store into the backup directory.

        Uses the SQLite backup API on a pooled connection, so the copy is a
        consistent snapshot even while other connections write. Only the
        newest ``keep_backups`` copies are kept.

        Raises:
            BackupError: the store has no file or the backup failed
        """
        async def action():
            source = self.database_path
            if not source:
                raise RuntimeError("In-memory store cannot be backed up")

            timestamp = datetime.utcnow().strftime('%Y%m%dT%H%M%S%fZ')
            target = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}{BACKUP_SUFFIX}"
            await asyncio.to_thread(self.backup_dir.mkdir, parents=True, exist_ok=True)

            async with self.pool.connection() as conn:
                raw = await conn.get_raw_connection()
                async with aiosqlite.connect(str(target)) as destination:
                    await raw.driver_connection.backup(destination)

            self.stats['backups_created'] += 1
            rotated = await self.rotate_backups()
            return 0, {
                'backup_file': str(target),
                'backup_size': await self._file_size(str(target)),
                'rotated': rotated,
            }

        return await self._run('backup', action, error_cls=BackupError)

    async def list_backups(self) -> List[Path]:
        """Backups, newest first."""
        def _list():
            if not self.backup_dir.exists():
                return []
            return sorted(
                (p for p in self.backup_dir.iterdir()
                 if p.name.startswith(BACKUP_PREFIX) and p.name.endswith(BACKUP_SUFFIX)),
                key=lambda p: p.name,
                reverse=True
            )

        return await asyncio.to_thread(_list)

    async def rotate_backups(self) -> int:
        """Delete backups beyond the newest ``keep_backups``."""
        backups = await self.list_backups()
        deleted = 0
        for old_backup in backups[self.keep_backups:]:
            try:
                await asyncio.to_thread(old_backup.unlink)
                deleted += 1
                self.logger.info(f"Deleted old backup: {old_backup.name}", operation="rotate_backups")
            except OSError as e:
                self.logger.error(f"Failed to delete old backup {old_backup.name}: {e}", operation="rotate_backups")

        self.stats['backups_rotated'] += deleted
        return deleted

    async def cleanup_old_data(self, days: Optional[int] = None) -> MaintenanceResult:
        """Delete analytics, query and maintenance history older than the retention window."""
        if days is None:
            days = self.retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)

        async def action():
            per_table: Dict[str, int] = {}
            async with self.pool.connection() as conn:
                for model, column in RETENTION_TABLES.items():
                    result = await conn.execute(delete(model).where(column < cutoff))
                    per_table[model.__tablename__] = result.rowcount
            total = sum(per_table.values())
            self.stats['rows_cleaned'] += total
            return total, {'retention_days': days, 'tables': per_table}

        return await self._run('cleanup', action)

    async def _run_statement(self, statement: str) -> Tuple[int, Dict[str, Any]]:
        async with self.pool.connection() as conn:
            await conn.exec_driver_sql(statement)
        return 0, {}

    async def vacuum(self) -> MaintenanceResult:
        """Rebuild the database file to reclaim free pages."""
        return await self._run('vacuum', lambda: self._run_statement("VACUUM"))

    async def reindex(self) -> MaintenanceResult:
        """Rebuild every index."""
        return await self._run('reindex', lambda: self._run_statement("REINDEX"))

    async def analyze(self) -> MaintenanceResult:
        """Refresh query planner statistics."""
        return await self._run('analyze', lambda: self._run_statement("ANALYZE"))

    async def perform_full_optimization(self) -> Dict[str, Any]:
        """
        Run backup, cleanup, vacuum, reindex and analyze in that order.

        A failed backup aborts the sequence. Failures of the later steps are
        logged and the remaining steps still run.
        """
        started = time.perf_counter()
        steps: Dict[str, Dict[str, Any]] = {}

        try:
            steps['backup'] = (await self.create_backup()).to_dict()
        except BackupError as e:
            self.logger.error(f"Full optimization aborted, backup failed: {e}", operation="full_optimization")
            return {
                'success': False,
                'aborted': True,
                'steps': {'backup': {'operation': 'backup', 'success': False, 'error': str(e)}},
                'duration_ms': (time.perf_counter() - started) * 1000,
            }

        for name, step in (
            ('cleanup', self.cleanup_old_data),
            ('vacuum', self.vacuum),
            ('reindex', self.reindex),
            ('analyze', self.analyze),
        ):
            try:
                steps[name] = (await step()).to_dict()
            except MaintenanceError as e:
                self.logger.warning(f"Optimization step {name} failed, continuing: {e}",
                                    operation="full_optimization")
                steps[name] = {'operation': name, 'success': False, 'error': str(e)}

        success = all(step['success'] for step in steps.values())
        duration_ms = (time.perf_counter() - started) * 1000
        self.logger.info(
            f"Full optimization finished in {duration_ms:.0f}ms",
            operation="full_optimization",
            success=success
        )
        return {'success': success, 'aborted': False, 'steps': steps, 'duration_ms': duration_ms}

    async def get_last_maintenance_operations(self, limit: int = 10) -> List[Dict[str, Any]]:
        async with self.pool.connection() as conn:
            result = await conn.execute(
                select(
                    MaintenanceLog.operation_type,
                    MaintenanceLog.duration_ms,
                    MaintenanceLog.rows_affected,
                    MaintenanceLog.size_before,
                    MaintenanceLog.size_after,
                    MaintenanceLog.status,
                    MaintenanceLog.error_message,
                    MaintenanceLog.performed_at,
                )
                .order_by(MaintenanceLog.performed_at.desc(), MaintenanceLog.id.desc())
                .limit(limit)
            )
            return [dict(row._mapping) for row in result]

    async def get_database_statistics(self) -> Dict[str, Any]:
        """File size, page usage and per-table row counts."""
        async with self.pool.connection() as conn:
            table_names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            tables = {}
            for table_name in table_names:
                result = await conn.exec_driver_sql(f'SELECT COUNT(*) FROM "{table_name}"')
                tables[table_name] = {'row_count': result.scalar()}

            pragmas = {}
            for pragma in ('page_count', 'page_size', 'freelist_count', 'journal_mode'):
                result = await conn.exec_driver_sql(f"PRAGMA {pragma}")
                pragmas[pragma] = result.scalar()

        database_size = await self.database_size()
        return {
            'database_path': self.database_path,
            'database_size': database_size,
            'database_size_formatted': format_bytes(database_size),
            'page_count': pragmas['page_count'],
            'page_size': pragmas['page_size'],
            'freelist_count': pragmas['freelist_count'],
            'journal_mode': pragmas['journal_mode'],
            'tables': tables,
            'last_maintenance': await self.get_last_maintenance_operations(),
            'backups': [p.name for p in await self.list_backups()],
        }

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
