"""
In-process metrics rendered in the Prometheus text exposition format.

Counters and histograms are module-level singletons registered on METRICS;
tests call METRICS.reset() between cases. Scraped at GET /metrics.
"""

from __future__ import annotations

import bisect
import re
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _render_labels(pairs: Sequence[Tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        labels = labels or {}
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _pairs(self, key: LabelKey) -> List[Tuple[str, str]]:
        return list(zip(self.label_names, key))

    def header(self) -> List[str]:
        return [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]

    def samples(self) -> List[str]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None):
        super().__init__(name, help_text, label_names)
        self._values: Dict[LabelKey, float] = {}

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            items = sorted(self._values.items())
        return [f"{self.name}{_render_labels(self._pairs(k))} {v}" for k, v in items]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Histogram(_Metric):
    kind = "histogram"

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: Optional[Iterable[str]] = None,
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ):
        super().__init__(name, help_text, label_names)
        self.buckets = tuple(sorted(buckets))
        # per label key: [bucket counts..., +Inf count], sum
        self._series: Dict[LabelKey, Tuple[List[int], float]] = {}

    def observe(self, seconds: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        slot = bisect.bisect_left(self.buckets, seconds)
        with self._lock:
            counts, total = self._series.get(key, ([0] * (len(self.buckets) + 1), 0.0))
            counts[slot] += 1
            self._series[key] = (counts, total + seconds)

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            counts, _ = self._series.get(key, ([0], 0.0))
            return sum(counts)

    def samples(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            items = sorted((k, (list(c), s)) for k, (c, s) in self._series.items())
        for key, (counts, total) in items:
            pairs = self._pairs(key)
            running = 0
            for bound, n in zip(self.buckets + (float("inf"),), counts):
                running += n
                le = "+Inf" if bound == float("inf") else repr(bound)
                lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', le)])} {running}")
            lines.append(f"{self.name}_sum{_render_labels(pairs)} {total}")
            lines.append(f"{self.name}_count{_render_labels(pairs)} {running}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            existing = self._metrics.get(metric.name)
            if existing is not None:
                return existing
            self._metrics[metric.name] = metric
            return metric

    def counter(self, name: str, help_text: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter(name, help_text, label_names))

    def histogram(
        self,
        name: str,
        help_text: str,
        label_names: Optional[Iterable[str]] = None,
        buckets: Sequence[float] = Histogram.DEFAULT_BUCKETS,
    ) -> Histogram:
        return self._register(Histogram(name, help_text, label_names, buckets))

    def export_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.header())
            lines.extend(metric.samples())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests served", ["method", "path", "status"]
)
servers_provisioned_total = METRICS.counter(
    "servers_provisioned_total", "Provisioning attempts by resulting server status", ["status"]
)
orchestrator_failures_total = METRICS.counter(
    "orchestrator_failures_total", "Orchestrator calls that failed or timed out", ["operation"]
)
orchestrator_call_seconds = METRICS.histogram(
    "orchestrator_call_seconds", "Wall time of orchestrator calls", ["operation"]
)
quota_denials_total = METRICS.counter(
    "quota_denials_total", "Entitlement denials", ["reason"]
)
usage_increments_total = METRICS.counter(
    "usage_increments_total", "Billable requests recorded", ["endpoint"]
)


# Server ids are uuid4; container ids come from the orchestrator
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F]{8}-[0-9a-fA-F-]{27,}|mock-container-[0-9a-f]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to :id so label cardinality stays bounded."""
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
