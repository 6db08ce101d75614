"""Prometheus text exposition of the metric store."""

import re
from collections.abc import Iterable, Mapping

import structlog
from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, HistogramMetricFamily
from prometheus_client.registry import Collector

from ..constants import CONSTANTS
from .store import Metric, MetricKind, MetricStore

logger = structlog.get_logger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def sanitize_name(name: str, pattern: re.Pattern = _INVALID_NAME_CHARS) -> str:
    """Coerce an arbitrary string into a valid metric or label name."""
    cleaned = pattern.sub("_", name)
    if not cleaned or cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


class MetricStoreCollector(Collector):
    """Yields one metric family per stored metric name."""

    def __init__(
        self,
        store: MetricStore,
        stats: Mapping[str, float] | None = None,
        timestamps: bool = True,
    ):
        self.store = store
        self.stats = dict(stats or {})
        self.timestamps = timestamps

    def collect(self) -> Iterable:
        grouped: dict[str, list[Metric]] = {}
        for series in self.store.metrics():
            grouped.setdefault(sanitize_name(series.name), []).append(series)

        for metric_name, series_list in grouped.items():
            family = self._build_family(metric_name, series_list)
            if family is not None:
                yield family

        for stat, value in sorted(self.stats.items()):
            family = CounterMetricFamily(
                f"{CONSTANTS.ENGINE_METRIC_PREFIX}_{sanitize_name(stat)}",
                f"Total {stat.replace('_', ' ')} since startup",
            )
            family.add_metric([], float(value))
            yield family

    def _build_family(self, metric_name: str, series_list: list[Metric]):
        # Series whose raw names sanitize alike share one family
        name = series_list[0].name
        definition = self.store.definition(name)
        kind = definition.kind if definition else series_list[0].kind
        help_text = definition.help if definition else f"{name} observed by healwatch"

        label_names = sorted({label for series in series_list for label in series.labels})
        safe_labels = [sanitize_name(label, _INVALID_LABEL_CHARS) for label in label_names]

        if kind is MetricKind.COUNTER:
            family = CounterMetricFamily(metric_name, help_text, labels=safe_labels)
        elif kind is MetricKind.HISTOGRAM:
            family = HistogramMetricFamily(metric_name, help_text, labels=safe_labels)
        else:
            family = GaugeMetricFamily(metric_name, help_text, labels=safe_labels)

        for series in series_list:
            if series.kind is not kind:
                logger.warning(
                    "Skipping series with mismatched type",
                    metric=name,
                    expected=kind.value,
                    actual=series.kind.value,
                )
                continue
            values = [series.labels.get(label, "") for label in label_names]
            timestamp = series.updated_at if self.timestamps else None

            if kind is MetricKind.HISTOGRAM:
                buckets = [
                    (_format_bound(bound), count)
                    for bound, count in zip(series.buckets, series.bucket_counts, strict=True)
                ]
                buckets.append(("+Inf", series.count))
                family.add_metric(values, buckets, series.total, timestamp=timestamp)
            else:
                family.add_metric(values, series.value, timestamp=timestamp)

        return family


def _format_bound(bound: float) -> str:
    return repr(float(bound))


def render_exposition(
    store: MetricStore,
    stats: Mapping[str, float] | None = None,
    timestamps: bool | None = None,
) -> bytes:
    """Render the store (and optional engine counters) as exposition text.

    Args:
        store: Metric store to render
        stats: Engine counters exported as ``healwatch_<name>_total``
        timestamps: Append sample timestamps; defaults to the store settings

    Returns:
        UTF-8 encoded exposition document
    """
    if timestamps is None:
        timestamps = store.settings.exposition_timestamps
    registry = CollectorRegistry(auto_describe=False)
    registry.register(MetricStoreCollector(store, stats=stats, timestamps=timestamps))
    return generate_latest(registry)
