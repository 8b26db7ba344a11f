"""
Buffered analytics sink for cache operations.

Each cache operation appends one row to an in-memory buffer; the buffer is
written to ``cache_analytics`` in a single insert once it fills up, when the
scheduler flushes it, and on shutdown.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..logging_config import get_logger

OPERATIONS = frozenset({'hit', 'miss', 'set', 'delete', 'evict'})


class CacheAnalyticsRecorder:
    """Collects per-operation analytics rows and writes them in batches."""

    def __init__(self, store, batch_size: int = 100, enabled: bool = True):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.enabled = enabled
        self.logger = get_logger(__name__, 'cache_analytics')

        self._buffer: List[Dict[str, Any]] = []
        self.stats = {
            'recorded': 0,
            'flushed': 0,
            'dropped': 0,
            'flush_errors': 0,
        }

    def record(
        self,
        cache_key: str,
        operation: str,
        latency_ms: float = 0.0,
        size_bytes: int = 0,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Buffer one analytics row."""
        if not self.enabled:
            return
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown cache operation: {operation}")

        self._buffer.append({
            'cache_key': cache_key,
            'operation': operation,
            'response_time_ms': round(latency_ms, 3),
            'size_bytes': size_bytes,
            'ttl_seconds': ttl,
            'tags': sorted(tags),
            'timestamp': datetime.utcnow(),
        })
        self.stats['recorded'] += 1

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def maybe_flush(self) -> int:
        """Flush if the buffer has reached the batch size."""
        if len(self._buffer) >= self.batch_size:
            return await self.flush()
        return 0

    async def flush(self) -> int:
        """Write all buffered rows. Rows are dropped if the write fails."""
        if not self._buffer:
            return 0

        rows, self._buffer = self._buffer, []
        try:
            written = await self.store.record_analytics(rows)
        except Exception as e:
            self.stats['flush_errors'] += 1
            self.stats['dropped'] += len(rows)
            self.logger.error(
                f"Failed to flush cache analytics: {e}",
                operation="flush",
                rows=len(rows)
            )
            return 0

        self.stats['flushed'] += written
        return written

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'pending': len(self._buffer), 'enabled': self.enabled}
