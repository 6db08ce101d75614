"""Predictive forecasting of resource metrics.

A :class:`Forecaster` pulls recent history from the metric store, hands it to
a :class:`ForecastModel` strategy and turns the projected values into a
:class:`Prediction` with potential issues, recommendations and a risk score.
"""

import math
import statistics
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from ..constants import CONSTANTS
from ..core.config import MonitoringSettings, settings as default_settings
from ..core.exceptions import ConfigurationError, InsufficientDataError
from .arena import Arena
from .events import Subscription
from .store import MetricStore, Sample

logger = structlog.get_logger(__name__)

FORECAST_SUFFIX = "_forecast"


@dataclass(frozen=True)
class ModelForecast:
    """Projected values produced by a forecast model."""

    values: tuple[float, ...]
    confidence: float


@runtime_checkable
class ForecastModel(Protocol):
    """Strategy that projects a series onto future timestamps."""

    name: str

    def forecast(
        self, timestamps: Sequence[float], values: Sequence[float], horizon: Sequence[float]
    ) -> ModelForecast: ...


class LinearTrendModel:
    """Ordinary least squares trend; confidence is the fit's R²."""

    name = "linear_regression"

    def forecast(
        self, timestamps: Sequence[float], values: Sequence[float], horizon: Sequence[float]
    ) -> ModelForecast:
        origin = timestamps[0]
        xs = [t - origin for t in timestamps]
        if len(set(xs)) < 2:
            xs = [float(i) for i in range(len(values))]
            step = 1.0
            future = [xs[-1] + step * (i + 1) for i in range(len(horizon))]
        else:
            future = [t - origin for t in horizon]

        slope, intercept = statistics.linear_regression(xs, values)
        fitted = [slope * x + intercept for x in xs]

        mean = statistics.fmean(values)
        ss_tot = sum((v - mean) ** 2 for v in values)
        ss_res = sum((v - f) ** 2 for v, f in zip(values, fitted, strict=True))
        r_squared = 1.0 if ss_tot == 0 else max(0.0, 1.0 - ss_res / ss_tot)

        return ModelForecast(
            values=tuple(slope * x + intercept for x in future),
            confidence=min(1.0, r_squared),
        )


class MovingAverageModel:
    """Flat projection of the recent mean; confidence drops with dispersion."""

    name = "moving_average"

    def __init__(self, span: int = 10):
        if span < 1:
            raise ValueError("span must be at least 1")
        self.span = span

    def forecast(
        self, timestamps: Sequence[float], values: Sequence[float], horizon: Sequence[float]
    ) -> ModelForecast:
        recent = list(values[-self.span :])
        mean = statistics.fmean(recent)
        spread = statistics.pstdev(recent)
        variation = spread / abs(mean) if mean else (0.0 if spread == 0 else 1.0)
        return ModelForecast(
            values=tuple(mean for _ in horizon),
            confidence=max(0.0, min(1.0, 1.0 - variation)),
        )


MODELS: dict[str, Callable[[], ForecastModel]] = {
    "linear": LinearTrendModel,
    "moving_average": MovingAverageModel,
}


def create_model(name: str) -> ForecastModel:
    factory = MODELS.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown forecast model: {name}")
    return factory()


# Issue type and recommended action per forecast metric
ISSUE_TYPES: dict[str, str] = {
    "cpu_usage": "cpu_saturation",
    "memory_usage": "memory_exhaustion",
    "disk_usage": "disk_capacity_shortage",
    "error_rate": "service_degradation",
    "active_users": "user_capacity_shortage",
}

RECOMMENDATIONS: dict[str, tuple[str, str]] = {
    "cpu_saturation": ("scale_up", "Predicted CPU saturation"),
    "memory_exhaustion": ("increase_memory", "Predicted memory exhaustion"),
    "disk_capacity_shortage": ("expand_storage", "Predicted disk capacity shortage"),
    "service_degradation": ("restart_service", "Predicted service degradation"),
    "user_capacity_shortage": ("scale_out", "Predicted user capacity shortage"),
}


@dataclass
class PotentialIssue:
    """A projected threshold breach."""

    type: str
    severity: str
    estimated_time: datetime
    confidence: float
    metric: str
    threshold: float
    forecast_value: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "estimated_time": self.estimated_time.isoformat(),
            "confidence": self.confidence,
            "metric": self.metric,
            "threshold": self.threshold,
            "forecast_value": self.forecast_value,
        }


@dataclass
class Recommendation:
    action: str
    reason: str
    urgency: str

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action, "reason": self.reason, "urgency": self.urgency}


@dataclass
class Prediction:
    """Forecast for one resource metric over a time window."""

    id: int
    resource_id: str
    metric_name: str
    horizon: float
    timestamps: tuple[float, ...]
    values: tuple[float, ...]
    confidence: float
    model: str
    generated_at: float
    valid_until: float
    sample_count: int
    data_quality: str = "good"
    potential_issues: list[PotentialIssue] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    risk_score: float = 0.0
    impact: dict[str, int] = field(default_factory=dict)

    @property
    def peak(self) -> float:
        return max(self.values)

    def is_active(self, now: float) -> bool:
        return now < self.valid_until

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "metric_name": self.metric_name,
            "horizon": self.horizon,
            "forecast": [
                {"timestamp": t, "value": v}
                for t, v in zip(self.timestamps, self.values, strict=True)
            ],
            "peak": self.peak,
            "confidence": self.confidence,
            "model": self.model,
            "potential_issues": [issue.to_dict() for issue in self.potential_issues],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "risk_score": self.risk_score,
            "impact": dict(self.impact),
            "data_quality": self.data_quality,
            "sample_count": self.sample_count,
            "generated_at": datetime.fromtimestamp(self.generated_at, UTC).isoformat(),
            "valid_until": datetime.fromtimestamp(self.valid_until, UTC).isoformat(),
        }


def calculate_risk_score(issues: Sequence[PotentialIssue], confidence: float) -> float:
    return min(1.0, len(issues) * CONSTANTS.RISK_WEIGHT_PER_ISSUE * confidence)


def assess_impact(issues: Sequence[PotentialIssue]) -> dict[str, int]:
    """Count issues touching users, services and data."""
    return {
        "users": sum(1 for i in issues if "user" in i.type),
        "services": sum(1 for i in issues if "service" in i.type),
        "data": sum(1 for i in issues if "data" in i.type or "disk" in i.type),
    }


class Forecaster:
    """Generates predictions from metric store history."""

    def __init__(
        self,
        store: MetricStore,
        settings: MonitoringSettings | None = None,
        model: ForecastModel | None = None,
        clock: Callable[[], float] | None = None,
    ):
        """Initialize the forecaster.

        Args:
            store: Metric store to read history from
            settings: Monitoring settings; defaults to the global settings
            model: Forecast strategy; built from ``settings.forecast_model`` if omitted
            clock: Source of epoch-second timestamps; defaults to the store's clock
        """
        self.store = store
        self.settings = settings or default_settings
        self.model = model or create_model(self.settings.forecast_model)
        self.clock = clock or store.clock or time.time
        self.predictions: Arena[Prediction] = Arena(self.settings.prediction_capacity)
        self.predictions_generated: Subscription[Prediction] = Subscription("predictions_generated")
        self.counters = {"generated": 0, "insufficient_data": 0, "issues_detected": 0}

    def forecast(
        self, resource_id: str, window: float | None = None, metric: str | None = None
    ) -> Prediction:
        """Forecast a resource metric over ``window`` seconds.

        Args:
            resource_id: Resource to forecast
            window: Forecast horizon in seconds; history of twice this span is used
            metric: Metric to forecast; the most sampled one if omitted

        Returns:
            The stored prediction

        Raises:
            InsufficientDataError: Fewer samples than ``forecast_min_samples``
        """
        window = window or self.settings.forecast_window
        if window <= 0:
            raise ValueError("window must be positive")

        history = self.store.history(resource_id, window=2 * window, metric=metric)
        if metric is None:
            metric = self._select_metric(history)
            history = tuple(s for s in history if s.name == metric)

        required = self.settings.forecast_min_samples
        if len(history) < required:
            self.counters["insufficient_data"] += 1
            raise InsufficientDataError(
                f"Forecast needs {required} samples, found {len(history)}",
                resource_id=resource_id,
                available=len(history),
                required=required,
            )

        now = self.clock()
        timestamps = [s.timestamp for s in history]
        values = [s.value for s in history]
        horizon = self._horizon(timestamps, window)

        result = self.model.forecast(timestamps, values, horizon)
        confidence = max(0.0, min(1.0, result.confidence))
        projected = tuple(v if math.isfinite(v) else values[-1] for v in result.values)

        issues = self._detect_issues(metric, horizon, projected, confidence, window)
        prediction = self.predictions.append(
            lambda key: Prediction(
                id=key,
                resource_id=resource_id,
                metric_name=metric,
                horizon=window,
                timestamps=tuple(horizon),
                values=projected,
                confidence=confidence,
                model=self.model.name,
                generated_at=now,
                valid_until=now + window,
                sample_count=len(history),
                data_quality="good" if len(history) >= 2 * required else "fair",
                potential_issues=issues,
                recommendations=self._recommend(issues),
                risk_score=calculate_risk_score(issues, confidence),
                impact=assess_impact(issues),
            )
        )

        self.counters["generated"] += 1
        self.counters["issues_detected"] += len(issues)
        logger.info(
            "Prediction generated",
            prediction_id=prediction.id,
            resource=resource_id,
            metric=metric,
            model=self.model.name,
            confidence=round(confidence, 3),
            risk_score=prediction.risk_score,
            issues=len(issues),
        )
        self.predictions_generated.publish(prediction)
        return prediction

    def _select_metric(self, history: Sequence[Sample]) -> str | None:
        counts: dict[str, int] = {}
        for sample in history:
            if not sample.name.endswith(FORECAST_SUFFIX):
                counts[sample.name] = counts.get(sample.name, 0) + 1
        if not counts:
            return None
        return max(counts, key=lambda name: counts[name])

    def _horizon(self, timestamps: Sequence[float], window: float) -> list[float]:
        span = timestamps[-1] - timestamps[0]
        step = span / (len(timestamps) - 1) if span > 0 else window
        steps = max(1, min(self.settings.forecast_max_steps, int(window // step)))
        step = window / steps
        return [timestamps[-1] + step * (i + 1) for i in range(steps)]

    def _detect_issues(
        self,
        metric: str,
        horizon: Sequence[float],
        values: Sequence[float],
        confidence: float,
        window: float,
    ) -> list[PotentialIssue]:
        threshold = self.settings.forecast_thresholds.get(metric)
        if threshold is None:
            return []

        for timestamp, value in zip(horizon, values, strict=True):
            if value < threshold:
                continue
            lead = timestamp - horizon[0]
            if lead <= window / 4:
                severity = "critical"
            elif lead <= window / 2:
                severity = "high"
            else:
                severity = "medium"
            return [
                PotentialIssue(
                    type=ISSUE_TYPES.get(metric, f"{metric}_threshold_breach"),
                    severity=severity,
                    estimated_time=datetime.fromtimestamp(timestamp, UTC),
                    confidence=confidence,
                    metric=metric,
                    threshold=threshold,
                    forecast_value=value,
                )
            ]
        return []

    def _recommend(self, issues: Sequence[PotentialIssue]) -> list[Recommendation]:
        recommendations = []
        for issue in issues:
            action, reason = RECOMMENDATIONS.get(
                issue.type, ("investigate", f"Predicted {issue.metric} threshold breach")
            )
            recommendations.append(Recommendation(action=action, reason=reason, urgency=issue.severity))
        return recommendations

    def get_prediction(self, prediction_id: int) -> Prediction | None:
        return self.predictions.get(prediction_id)

    def active_predictions(self, resource_id: str | None = None) -> list[Prediction]:
        """Unexpired predictions; expired ones stay stored for audit."""
        now = self.clock()
        return [
            p
            for p in self.predictions
            if p.is_active(now) and (resource_id is None or p.resource_id == resource_id)
        ]

    def list_predictions(self, resource_id: str | None = None) -> list[Prediction]:
        return [p for p in self.predictions if resource_id is None or p.resource_id == resource_id]
