"""Process-wide metrics rendered in the Prometheus text exposition format.

Metrics are module-level singletons registered with :data:`REGISTRY` once,
at application startup, via :func:`register_default_metrics`. Handlers and
middleware only increment or observe; the ``/metrics`` endpoint only reads.
"""

from __future__ import annotations

import math
import threading
from typing import Dict, Iterable, List, Sequence, Tuple

DEFAULT_BUCKETS: Tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0,
)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    pairs = ",".join(f'{name}="{_escape_label(value)}"' for name, value in zip(names, values))
    return "{" + pairs + "}"


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class Counter:
    metric_type = "counter"

    def __init__(self, name: str, documentation: str, labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.documentation = documentation
        self.labelnames = tuple(labelnames)
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Dict[str, str]) -> Tuple[str, ...]:
        if set(labels) != set(self.labelnames):
            raise ValueError(
                f"{self.name} expects labels {self.labelnames}, got {tuple(labels)}"
            )
        return tuple(str(labels[name]) for name in self.labelnames)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            items = sorted(self._values.items())
        if not items and not self.labelnames:
            items = [((), 0.0)]
        return [
            f"{self.name}{_format_labels(self.labelnames, key)} {_format_value(value)}"
            for key, value in items
        ]


class Histogram:
    metric_type = "histogram"

    def __init__(
        self, name: str, documentation: str, buckets: Iterable[float] = DEFAULT_BUCKETS
    ) -> None:
        self.name = name
        self.documentation = documentation
        self.buckets = tuple(sorted(buckets)) + (math.inf,)
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[index] += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def samples(self) -> List[str]:
        with self._lock:
            counts = list(self._counts)
            total, count = self._sum, self._count
        lines = [
            f'{self.name}_bucket{{le="{_format_value(bound)}"}} {bucket_count}'
            for bound, bucket_count in zip(self.buckets, counts)
        ]
        lines.append(f"{self.name}_sum {_format_value(total)}")
        lines.append(f"{self.name}_count {count}")
        return lines


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}
        self._lock = threading.Lock()

    def register(self, metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric already registered: {metric.name}")
            self._metrics[metric.name] = metric

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._metrics

    def render(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.append(f"# HELP {metric.name} {metric.documentation}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type}")
            lines.extend(metric.samples())
        return "\n".join(lines) + "\n"


REGISTRY = MetricsRegistry()

REQUESTS_PROCESSED = Counter(
    "requests_processed_total", "Total number of requests processed"
)
REQUEST_DURATION = Histogram(
    "request_duration_seconds", "Duration of processed HTTP requests in seconds"
)
ADMISSION_REJECTIONS = Counter(
    "admission_rejections_total",
    "Requests terminated by an admission gatekeeper",
    labelnames=("gate",),
)
IDENTITY_EVENTS = Counter(
    "identity_events_total",
    "Identity lifecycle outcomes (signup, confirm, login, logout)",
    labelnames=("event", "outcome"),
)

_DEFAULT_METRICS = (REQUESTS_PROCESSED, REQUEST_DURATION, ADMISSION_REJECTIONS, IDENTITY_EVENTS)
_register_lock = threading.Lock()


def register_default_metrics(registry: MetricsRegistry = REGISTRY) -> None:
    """Register the built-in metrics; repeat calls are no-ops."""
    with _register_lock:
        for metric in _DEFAULT_METRICS:
            if not registry.is_registered(metric.name):
                registry.register(metric)


def render_metrics(registry: MetricsRegistry = REGISTRY) -> str:
    return registry.render()


__all__ = [
    "Counter",
    "Histogram",
    "MetricsRegistry",
    "REGISTRY",
    "REQUESTS_PROCESSED",
    "REQUEST_DURATION",
    "ADMISSION_REJECTIONS",
    "IDENTITY_EVENTS",
    "register_default_metrics",
    "render_metrics",
]
