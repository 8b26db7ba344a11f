"""
In-process metrics for tiercache.

A ``MetricsCollector`` is a plain registry of labelled counters, gauges and
histograms. The runtime builds one and hands it to every component, so all
cache, query and maintenance figures for one runtime land in one place and
separate runtimes never share numbers.
"""

import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import psutil

Number = Union[int, float]
LabelKey = Tuple[Tuple[str, str], ...]


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    BYTES = "bytes"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


def _label_key(labels: Dict[str, Any]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _label_name(key: LabelKey) -> str:
    return ",".join(f"{k}={v}" for k, v in key) or "total"


class Counter:
    """Monotonic counter, tracked per label set."""

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.unit = MetricUnit.COUNT
        self._values: Dict[LabelKey, Number] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Number = 1, **labels):
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        key = _label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Number:
        """Value for one label set, or the sum over all of them when no labels are given."""
        with self._lock:
            if labels:
                return self._values.get(_label_key(labels), 0)
            return sum(self._values.values())

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            by_label = {_label_name(k): v for k, v in self._values.items()}
        return {'type': self.metric_type.value, 'total': sum(by_label.values()), 'by_label': by_label}


class Gauge:
    """Last-written value, tracked per label set."""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT):
        self.name = name
        self.description = description
        self.unit = unit
        self._values: Dict[LabelKey, Number] = {}
        self._lock = threading.Lock()

    def set(self, value: Number, **labels):
        with self._lock:
            self._values[_label_key(labels)] = value

    def get_value(self, **labels) -> Number:
        with self._lock:
            return self._values.get(_label_key(labels), 0)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            values = {_label_name(k): v for k, v in self._values.items()}
        return {'type': self.metric_type.value, 'unit': self.unit.value, 'values': values}


class Histogram:
    """Bucketed distribution of observed values."""

    metric_type = MetricType.HISTOGRAM
    DEFAULT_BUCKETS = (1.0, 5.0, 10.0, 50.0, 100.0, 500.0, 1000.0, float('inf'))

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.MILLISECONDS,
                 buckets: Optional[List[float]] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.buckets = tuple(buckets or self.DEFAULT_BUCKETS)
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._min: Optional[float] = None
        self._max: Optional[float] = None
        self._lock = threading.Lock()

    def observe(self, value: Number, **labels):
        # Labels are ignored; all observations share one distribution
        with self._lock:
            self._sum += value
            self._count += 1
            self._min = value if self._min is None else min(self._min, value)
            self._max = value if self._max is None else max(self._max, value)
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'min': self._min,
                'max': self._max,
                'buckets': {str(b): c for b, c in self._bucket_counts.items()},
            }

    def snapshot(self) -> Dict[str, Any]:
        return {'type': self.metric_type.value, 'unit': self.unit.value, **self.get_statistics()}


class MetricsCollector:
    """Registry of the counters, gauges and histograms of one runtime."""

    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def get_counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, description)
            return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        """Get or create a gauge."""
        with self._lock:
            if name not in self.gauges:
                self.gauges[name] = Gauge(name, description, unit)
            return self.gauges[name]

    def get_histogram(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.MILLISECONDS,
                      buckets: Optional[List[float]] = None) -> Histogram:
        """Get or create a histogram."""
        with self._lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, description, unit, buckets)
            return self.histograms[name]

    def collect_process_metrics(self) -> Dict[str, float]:
        """Sample resource usage of the current process into gauges."""
        process = psutil.Process()
        memory = process.memory_info()

        sample = {
            'rss_mb': memory.rss / 1024 / 1024,
            'vms_mb': memory.vms / 1024 / 1024,
            'cpu_percent': process.cpu_percent(),
            'threads': process.num_threads(),
        }

        self.get_gauge('process_memory_rss_bytes', unit=MetricUnit.BYTES).set(memory.rss)
        self.get_gauge('process_cpu_percent', unit=MetricUnit.PERCENT).set(sample['cpu_percent'])
        return sample

    def snapshot(self) -> Dict[str, Any]:
        """Current value of every registered metric, keyed by kind and name."""
        with self._lock:
            counters = list(self.counters.values())
            gauges = list(self.gauges.values())
            histograms = list(self.histograms.values())

        return {
            'counters': {m.name: m.snapshot() for m in counters},
            'gauges': {m.name: m.snapshot() for m in gauges},
            'histograms': {m.name: m.snapshot() for m in histograms},
        }
