"""Metric store with per-resource baselines and classified observations."""

import math
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from ..core.config import MonitoringSettings, settings as default_settings
from ..core.exceptions import ValidationError
from .baseline import Baseline, Severity, Trend, classify_severity, detect_trend
from .events import Subscription

logger = structlog.get_logger(__name__)

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")

DEFAULT_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0
)


class MetricKind(Enum):
    """Exposition type of a metric family."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricDefinition:
    """Registered metadata for a metric family."""

    name: str
    help: str
    kind: MetricKind = MetricKind.GAUGE
    buckets: tuple[float, ...] = DEFAULT_BUCKETS

    def __post_init__(self):
        if not self.name:
            raise ValidationError("Metric name cannot be empty", field="name")
        if self.kind is MetricKind.HISTOGRAM and list(self.buckets) != sorted(self.buckets):
            raise ValidationError("Histogram buckets must be sorted", field="buckets")


@dataclass(frozen=True)
class Sample:
    """A single timestamped value."""

    name: str
    timestamp: float
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "value": self.value,
            "labels": dict(self.labels),
        }


@dataclass
class Metric:
    """Current value, running aggregates and bounded samples of one series."""

    name: str
    labels: dict[str, str]
    kind: MetricKind = MetricKind.GAUGE
    capacity: int = 1000
    value: float = 0.0
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    updated_at: float | None = None
    buckets: tuple[float, ...] = ()
    bucket_counts: list[int] = field(default_factory=list)
    samples: deque = field(init=False)

    def __post_init__(self):
        self.samples = deque(maxlen=self.capacity)
        if self.buckets and not self.bucket_counts:
            self.bucket_counts = [0] * len(self.buckets)

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0

    def record(self, value: float, timestamp: float) -> Sample:
        """Update aggregates and append a sample.

        For counters ``value`` is the increment; the current value accumulates.
        For histograms the observation is also added to every bucket it fits.
        """
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)
        if self.kind is MetricKind.COUNTER:
            self.value += value
        else:
            self.value = value
        if self.kind is MetricKind.HISTOGRAM:
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    self.bucket_counts[index] += 1
        self.updated_at = timestamp

        sample = Sample(self.name, timestamp, value, dict(self.labels))
        self.samples.append(sample)
        return sample

    def to_dict(self) -> dict[str, Any]:
        data = {
            "name": self.name,
            "labels": dict(self.labels),
            "kind": self.kind.value,
            "value": self.value,
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.average,
            "updated_at": self.updated_at,
        }
        if self.kind is MetricKind.HISTOGRAM:
            data["buckets"] = dict(zip(self.buckets, self.bucket_counts, strict=True))
        return data


@dataclass
class ObservationContext:
    """Circumstances reported alongside an observation."""

    category: str | None = None
    system_load: float | None = None
    user_activity: float | None = None
    external_factors: dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricData:
    """Validated input to :meth:`MetricStore.observe`."""

    name: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)
    category: str | None = None
    system_load: float | None = None
    user_activity: float | None = None
    external_factors: dict[str, Any] = field(default_factory=dict)
    timestamp: float | None = None

    def validate(self, resource_id: str | None = None) -> "MetricData":
        """Check every field, raising ``ValidationError`` on the first problem."""
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValidationError("Metric name is required", field="name", resource_id=resource_id)
        if not _METRIC_NAME.match(self.name):
            raise ValidationError(
                "Metric name may only contain letters, digits, underscores and colons",
                field="name",
                resource_id=resource_id,
            )
        self.value = _finite_number(self.value, "value", resource_id)
        if not isinstance(self.labels, Mapping) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.labels.items()
        ):
            raise ValidationError(
                "Labels must be a mapping of strings to strings",
                field="labels",
                resource_id=resource_id,
            )
        for name in ("system_load", "user_activity", "timestamp"):
            if getattr(self, name) is not None:
                setattr(self, name, _finite_number(getattr(self, name), name, resource_id))
        if self.category is not None and not isinstance(self.category, str):
            raise ValidationError("Category must be a string", field="category", resource_id=resource_id)
        if not isinstance(self.external_factors, Mapping):
            raise ValidationError(
                "External factors must be a mapping", field="external_factors", resource_id=resource_id
            )
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], resource_id: str | None = None) -> "MetricData":
        """Build from a loosely typed mapping such as a request body."""
        if not isinstance(data, Mapping):
            raise ValidationError("Metric data must be a mapping", resource_id=resource_id)
        if "value" not in data:
            raise ValidationError("Metric value is required", field="value", resource_id=resource_id)
        metric = cls(
            name=data.get("name", ""),
            value=data["value"],
            labels=data.get("labels") or {},
            category=data.get("category"),
            system_load=data.get("system_load"),
            user_activity=data.get("user_activity"),
            external_factors=data.get("external_factors") or {},
            timestamp=data.get("timestamp"),
        )
        return metric.validate(resource_id)


def _finite_number(value: Any, name: str, resource_id: str | None) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"{name} must be numeric", field=name, resource_id=resource_id)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite", field=name, resource_id=resource_id)
    return float(value)


@dataclass
class ClassifiedObservation:
    """An accepted observation compared against its baseline."""

    resource_id: str
    metric_name: str
    value: float
    timestamp: float
    severity: Severity
    trend: Trend
    deviation: float | None = None
    baseline_mean: float | None = None
    baseline_stddev: float | None = None
    context: ObservationContext = field(default_factory=ObservationContext)
    labels: dict[str, str] = field(default_factory=dict)

    def fields(self) -> dict[str, Any]:
        """Values addressable from alert conditions; absent fields are omitted."""
        values: dict[str, Any] = {
            self.metric_name: self.value,
            "value": self.value,
            "severity": self.severity,
            "trend": self.trend.value,
            "resource": self.resource_id,
            "metric": self.metric_name,
        }
        if self.deviation is not None:
            values["deviation"] = self.deviation
        if self.context.category is not None:
            values["category"] = self.context.category
        if self.context.system_load is not None:
            values["system_load"] = self.context.system_load
        return values

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "metric_name": self.metric_name,
            "value": self.value,
            "timestamp": self.timestamp,
            "severity": self.severity.value,
            "trend": self.trend.value,
            "deviation": self.deviation,
            "baseline_mean": self.baseline_mean,
            "baseline_stddev": self.baseline_stddev,
            "context": {
                "category": self.context.category,
                "system_load": self.context.system_load,
                "user_activity": self.context.user_activity,
                "external_factors": dict(self.context.external_factors),
            },
            "labels": dict(self.labels),
        }


class MetricStore:
    """Time-series values for named, labeled metrics plus resource baselines.

    Series live in a dense list addressed through an index keyed by
    ``(name, labels)``. Observations for one resource are serialized by that
    resource's lock; different resources update in parallel.
    """

    def __init__(
        self,
        settings: MonitoringSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            settings: Monitoring settings; defaults to the global settings
            clock: Source of epoch-second timestamps
        """
        self.settings = settings or default_settings
        self.clock = clock

        self._series: list[Metric] = []
        self._index: dict[tuple[str, frozenset], int] = {}
        self._definitions: dict[str, MetricDefinition] = {}
        self._baselines: dict[tuple[str, str], Baseline] = {}
        self._recent: dict[tuple[str, str], deque[float]] = {}
        self._history: dict[str, deque[Sample]] = {}

        self._resource_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

        self.counters: dict[str, int] = {"observations": 0, "rejected": 0}
        self.observations: Subscription[ClassifiedObservation] = Subscription("observations")

    # Registration

    def register_metric(self, definition: MetricDefinition) -> MetricDefinition:
        """Register help text and type for a metric family."""
        with self._registry_lock:
            self._definitions[definition.name] = definition
        return definition

    def definition(self, name: str) -> MetricDefinition | None:
        return self._definitions.get(name)

    @property
    def definitions(self) -> dict[str, MetricDefinition]:
        return dict(self._definitions)

    # Observation pipeline

    def observe(self, resource_id: str, data: MetricData | Mapping[str, Any]) -> ClassifiedObservation:
        """Record a resource observation and classify it against the baseline.

        The deviation is measured against the baseline as it stood before this
        value, which is then folded in.

        Args:
            resource_id: Monitored resource the value belongs to
            data: Metric name, value and optional context

        Returns:
            The classified observation

        Raises:
            ValidationError: If the input is malformed; nothing is recorded
        """
        try:
            if not isinstance(resource_id, str) or not resource_id.strip():
                raise ValidationError("Resource id is required", field="resource_id")
            metric_data = (
                data.validate(resource_id)
                if isinstance(data, MetricData)
                else MetricData.from_mapping(data, resource_id)
            )
        except ValidationError:
            with self._registry_lock:
                self.counters["rejected"] += 1
            raise

        timestamp = metric_data.timestamp if metric_data.timestamp is not None else self.clock()
        key = (resource_id, metric_data.name)
        thresholds = self.settings.severity_thresholds

        with self._lock_for(resource_id):
            baseline = self._baselines.get(key)
            if baseline is None:
                baseline = self._baselines[key] = Baseline(resource_id, metric_data.name)

            deviation = mean = stddev = None
            if baseline.is_established(self.settings.baseline_min_samples):
                deviation = baseline.deviation(metric_data.value, self.settings.deviation_epsilon)
                mean, stddev = baseline.mean, baseline.stddev
            severity = classify_severity(deviation, thresholds)

            baseline.update(metric_data.value, timestamp)

            recent = self._recent.get(key)
            if recent is None:
                recent = self._recent[key] = deque(maxlen=self.settings.trend_window)
            recent.append(metric_data.value)
            trend = detect_trend(list(recent), self.settings.trend_tolerance)

            labels = {**metric_data.labels, "resource": resource_id}
            series = self._series_for(metric_data.name, labels, MetricKind.GAUGE)
            sample = series.record(metric_data.value, timestamp)

            history = self._history.get(resource_id)
            if history is None:
                history = self._history[resource_id] = deque(maxlen=self.settings.history_capacity)
            history.append(sample)

        with self._registry_lock:
            self.counters["observations"] += 1

        observation = ClassifiedObservation(
            resource_id=resource_id,
            metric_name=metric_data.name,
            value=metric_data.value,
            timestamp=timestamp,
            severity=severity,
            trend=trend,
            deviation=deviation,
            baseline_mean=mean,
            baseline_stddev=stddev,
            context=ObservationContext(
                category=metric_data.category,
                system_load=metric_data.system_load,
                user_activity=metric_data.user_activity,
                external_factors=dict(metric_data.external_factors),
            ),
            labels=labels,
        )

        if severity is not Severity.NORMAL:
            logger.debug(
                "Deviation detected",
                resource=resource_id,
                metric=metric_data.name,
                value=metric_data.value,
                deviation=deviation,
                severity=severity.value,
            )

        self.observations.publish(observation)
        return observation

    def history(
        self, resource_id: str, window: float | None = None, metric: str | None = None
    ) -> tuple[Sample, ...]:
        """Snapshot of a resource's samples, oldest first.

        Args:
            resource_id: Resource to read
            window: Only samples at most this many seconds old
            metric: Only samples of this metric

        Returns:
            A tuple that can be iterated any number of times
        """
        with self._lock_for(resource_id):
            samples = tuple(self._history.get(resource_id, ()))
        if window is not None:
            cutoff = self.clock() - window
            samples = tuple(s for s in samples if s.timestamp >= cutoff)
        if metric is not None:
            samples = tuple(s for s in samples if s.name == metric)
        return samples

    # Application metrics

    def set_gauge(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> Metric:
        value = _finite_number(value, "value", None)
        series = self._series_for(name, dict(labels or {}), MetricKind.GAUGE)
        with self._registry_lock:
            series.record(value, self.clock())
        return series

    def inc_counter(
        self, name: str, amount: float = 1.0, labels: Mapping[str, str] | None = None
    ) -> Metric:
        amount = _finite_number(amount, "amount", None)
        if amount < 0:
            raise ValidationError("Counters can only increase", field="amount")
        series = self._series_for(name, dict(labels or {}), MetricKind.COUNTER)
        with self._registry_lock:
            series.record(amount, self.clock())
        return series

    def observe_histogram(
        self, name: str, value: float, labels: Mapping[str, str] | None = None
    ) -> Metric:
        value = _finite_number(value, "value", None)
        series = self._series_for(name, dict(labels or {}), MetricKind.HISTOGRAM)
        with self._registry_lock:
            series.record(value, self.clock())
        return series

    # Baselines

    def seed_baseline(
        self,
        resource_id: str,
        metric: str,
        mean: float,
        stddev: float,
        count: int | None = None,
    ) -> Baseline:
        """Install a known baseline, marking it established immediately."""
        baseline = Baseline.from_statistics(
            resource_id,
            metric,
            _finite_number(mean, "mean", resource_id),
            _finite_number(stddev, "stddev", resource_id),
            count or self.settings.baseline_min_samples,
        )
        with self._lock_for(resource_id):
            self._baselines[(resource_id, metric)] = baseline
        logger.info("Seeded baseline", resource=resource_id, metric=metric, mean=mean, stddev=stddev)
        return baseline

    def reset_baseline(self, resource_id: str, metric: str | None = None) -> int:
        """Discard baselines for a resource (or one of its metrics).

        Returns:
            Number of baselines removed
        """
        with self._lock_for(resource_id):
            keys = [
                key
                for key in self._baselines
                if key[0] == resource_id and (metric is None or key[1] == metric)
            ]
            for key in keys:
                del self._baselines[key]
                self._recent.pop(key, None)
        logger.info("Reset baselines", resource=resource_id, metric=metric, removed=len(keys))
        return len(keys)

    def baseline(self, resource_id: str, metric: str) -> Baseline | None:
        return self._baselines.get((resource_id, metric))

    # Introspection

    def resources(self) -> list[str]:
        return sorted(self._history)

    def metrics(self) -> list[Metric]:
        with self._registry_lock:
            return list(self._series)

    def get_metric(self, name: str, labels: Mapping[str, str] | None = None) -> Metric | None:
        index = self._index.get((name, frozenset((labels or {}).items())))
        return self._series[index] if index is not None else None

    def export_exposition(self, stats: Mapping[str, float] | None = None) -> bytes:
        """Render every series in the text exposition format."""
        from .exposition import render_exposition

        return render_exposition(self, stats=stats)

    # Internals

    def _lock_for(self, resource_id: str) -> threading.Lock:
        lock = self._resource_locks.get(resource_id)
        if lock is None:
            with self._registry_lock:
                lock = self._resource_locks.setdefault(resource_id, threading.Lock())
        return lock

    def _series_for(self, name: str, labels: dict[str, str], kind: MetricKind) -> Metric:
        if not name:
            raise ValidationError("Metric name cannot be empty", field="name")
        key = (name, frozenset(labels.items()))
        index = self._index.get(key)
        if index is not None:
            return self._series[index]

        with self._registry_lock:
            index = self._index.get(key)
            if index is not None:
                return self._series[index]
            definition = self._definitions.get(name)
            if definition is not None:
                kind = definition.kind
            buckets = ()
            if kind is MetricKind.HISTOGRAM:
                buckets = definition.buckets if definition else DEFAULT_BUCKETS
            series = Metric(
                name=name,
                labels=labels,
                kind=kind,
                capacity=self.settings.history_capacity,
                buckets=buckets,
            )
            self._series.append(series)
            self._index[key] = len(self._series) - 1
            return series
