"""Rolling statistical baselines and deviation classification."""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from ..constants import CONSTANTS
from ..core.config import SeverityThresholds


class Severity(Enum):
    """Severity tiers assigned to classified observations."""

    NORMAL = "normal"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]

    @property
    def weight(self) -> int:
        """Alert priority weight; tiers without a weight count as ``low``."""
        return CONSTANTS.SEVERITY_WEIGHTS.get(self.value, CONSTANTS.SEVERITY_WEIGHTS["low"])

    @classmethod
    def parse(cls, value: "str | Severity") -> "Severity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise ValueError(f"Unknown severity: {value}") from e


_SEVERITY_RANKS = {
    Severity.NORMAL: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Trend(Enum):
    """Direction of recent samples."""

    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass
class Baseline:
    """Incremental mean/variance estimate for one resource metric.

    Uses Welford's algorithm so each update is O(1) and the running mean is
    exactly the arithmetic mean of every accepted value.
    """

    resource_id: str
    metric_name: str
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    seeded: bool = False
    updated_at: float | None = None

    @property
    def variance(self) -> float:
        """Population variance of the accepted values."""
        if self.count < 1:
            return 0.0
        return self.m2 / self.count

    @property
    def stddev(self) -> float:
        return math.sqrt(max(self.variance, 0.0))

    def update(self, value: float, timestamp: float | None = None) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.updated_at = timestamp

    def is_established(self, min_samples: int) -> bool:
        return self.seeded or self.count >= min_samples

    def deviation(self, value: float, epsilon: float) -> float:
        """Normalized distance of ``value`` from the mean, in standard deviations."""
        return abs(value - self.mean) / max(self.stddev, epsilon)

    @classmethod
    def from_statistics(
        cls,
        resource_id: str,
        metric_name: str,
        mean: float,
        stddev: float,
        count: int = 1,
    ) -> "Baseline":
        """Create a baseline with a known mean and standard deviation."""
        if stddev < 0:
            raise ValueError("stddev cannot be negative")
        if count < 1:
            raise ValueError("count must be at least 1")
        return cls(
            resource_id=resource_id,
            metric_name=metric_name,
            count=count,
            mean=float(mean),
            m2=float(stddev) ** 2 * count,
            seeded=True,
        )

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "metric_name": self.metric_name,
            "count": self.count,
            "mean": self.mean,
            "stddev": self.stddev,
            "seeded": self.seeded,
            "updated_at": self.updated_at,
        }


def classify_severity(deviation: float | None, thresholds: SeverityThresholds) -> Severity:
    """Map a deviation to a severity tier.

    Monotonic: a larger deviation never yields a lower tier.
    """
    if deviation is None:
        return Severity.NORMAL
    if deviation > thresholds.critical:
        return Severity.CRITICAL
    if deviation > thresholds.high:
        return Severity.HIGH
    if deviation > thresholds.medium:
        return Severity.MEDIUM
    return Severity.NORMAL


def detect_trend(values: Sequence[float], tolerance: float) -> Trend:
    """Classify the least-squares slope of ``values`` relative to their magnitude."""
    n = len(values)
    if n < 2:
        return Trend.STABLE

    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    denominator = sum((i - mean_x) ** 2 for i in range(n))
    slope = sum((i - mean_x) * (v - mean_y) for i, v in enumerate(values)) / denominator

    relative = slope / max(abs(mean_y), CONSTANTS.DEFAULT_DEVIATION_EPSILON)
    if relative > tolerance:
        return Trend.INCREASING
    if relative < -tolerance:
        return Trend.DECREASING
    return Trend.STABLE
