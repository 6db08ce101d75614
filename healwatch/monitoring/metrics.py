"""Host resource collection and HTTP request metrics."""

import asyncio
import socket
from typing import Any

import psutil
import structlog

from .store import MetricData, MetricDefinition, MetricKind, MetricStore

logger = structlog.get_logger(__name__)

REQUEST_DURATION_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0
)

SYSTEM_METRICS: tuple[MetricDefinition, ...] = (
    MetricDefinition("cpu_usage", "CPU usage percentage"),
    MetricDefinition("memory_usage", "Memory usage percentage"),
    MetricDefinition("disk_usage", "Disk usage percentage of the root filesystem"),
    MetricDefinition("system_load", "One minute load average"),
)

APPLICATION_METRICS: tuple[MetricDefinition, ...] = (
    MetricDefinition("http_requests_total", "Total number of HTTP requests", MetricKind.COUNTER),
    MetricDefinition(
        "http_request_duration_seconds",
        "HTTP request duration in seconds",
        MetricKind.HISTOGRAM,
        REQUEST_DURATION_BUCKETS,
    ),
)

_CATEGORIES = {
    "cpu_usage": "performance",
    "memory_usage": "performance",
    "system_load": "performance",
    "disk_usage": "capacity",
}


class MetricsCollector:
    """Reads host resource usage with psutil and records request metrics."""

    def __init__(self, store: MetricStore, resource_id: str | None = None):
        """Initialize metrics collector.

        Args:
            store: Metric store receiving application metrics
            resource_id: Resource name for host observations; the hostname by default
        """
        self.store = store
        self.resource_id = resource_id or socket.gethostname()
        self.last_snapshot: dict[str, Any] = {}

        for definition in SYSTEM_METRICS + APPLICATION_METRICS:
            store.register_metric(definition)

        # Prime the CPU counter so the first non-blocking reading is meaningful
        psutil.cpu_percent(interval=None)

        logger.info("Metrics collector initialized", resource=self.resource_id)

    def _read_system(self) -> dict[str, float]:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        return {
            "cpu_usage": psutil.cpu_percent(interval=None),
            "memory_usage": memory.percent,
            "disk_usage": (disk.used / disk.total) * 100,
            "system_load": psutil.getloadavg()[0],
        }

    async def collect_system_metrics(self) -> list[MetricData]:
        """Read host resource usage.

        Returns:
            One observation per system metric, ready for the store
        """
        readings = await asyncio.to_thread(self._read_system)
        self.last_snapshot = dict(readings)
        load = readings["system_load"]
        return [
            MetricData(
                name=name,
                value=float(value),
                category=_CATEGORIES.get(name),
                system_load=load,
            )
            for name, value in readings.items()
        ]

    def record_request(self, method: str, endpoint: str, status_code: int, duration: float) -> None:
        """Record HTTP request metrics.

        Args:
            method: HTTP method
            endpoint: Request endpoint
            status_code: HTTP status code
            duration: Request duration in seconds
        """
        labels = {"method": method, "endpoint": endpoint, "status": str(status_code)}
        self.store.inc_counter("http_requests_total", labels=labels)
        self.store.observe_histogram(
            "http_request_duration_seconds", duration, labels={"method": method, "endpoint": endpoint}
        )
