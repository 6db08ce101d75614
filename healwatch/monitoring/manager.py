"""Monitoring manager: wires the pipeline and runs the periodic loops.

Control flow for every observation::

    collector / API -> MetricStore.observe -> AlertRuleEngine.evaluate
                                          -> HealingOrchestrator.heal (auto-remediation)

The forecaster runs on its own schedule and feeds its peak forecast back
through the same pipeline as ``<metric>_forecast`` observations.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from ..constants import CONSTANTS
from ..core.collaborators import ActivitySink
from ..core.config import MonitoringSettings, settings as default_settings
from ..core.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    NoApplicableRemediationError,
    ValidationError,
)
from .alerts import Alert, AlertRule, AlertRuleEngine
from .baseline import Severity
from .dashboards import DashboardManager
from .forecasting import FORECAST_SUFFIX, Forecaster, Prediction
from .healing import HealingOrchestrator, HealingRecord, Issue
from .health import HealthChecker, HealthCheckResult, HealthStatus
from .metrics import MetricsCollector
from .store import ClassifiedObservation, MetricData, MetricStore

logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    """Outcome of pushing one observation through the pipeline."""

    observation: ClassifiedObservation
    alerts: list[Alert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "observation": self.observation.to_dict(),
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


class MonitoringManager:
    """Owns the monitoring components and their background tasks."""

    def __init__(
        self,
        settings: MonitoringSettings | None = None,
        *,
        store: MetricStore | None = None,
        alert_engine: AlertRuleEngine | None = None,
        forecaster: Forecaster | None = None,
        orchestrator: HealingOrchestrator | None = None,
        dashboards: DashboardManager | None = None,
        collector: MetricsCollector | None = None,
        health_checker: HealthChecker | None = None,
        activity_sink: ActivitySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the manager.

        Args:
            settings: Monitoring settings; defaults to the global settings
            store: Metric store (built from settings if omitted)
            alert_engine: Alert rule engine
            forecaster: Predictive forecaster
            orchestrator: Self-healing orchestrator
            dashboards: Dashboard registry
            collector: Host metrics collector
            health_checker: Health checker; host checks follow ``system_collection_enabled``
            activity_sink: Audit sink for the orchestrator
            clock: Source of epoch-second timestamps
        """
        self.settings = settings or default_settings
        self.clock = clock
        self.store = store or MetricStore(self.settings, clock=clock)
        self.alert_engine = alert_engine or AlertRuleEngine(self.settings, clock=clock)
        self.forecaster = forecaster or Forecaster(self.store, self.settings, clock=clock)
        self.orchestrator = orchestrator or HealingOrchestrator(
            self.settings, activity_sink=activity_sink, clock=clock
        )
        self.dashboards = dashboards or DashboardManager()
        self.collector = collector or MetricsCollector(self.store)
        self.health_checker = health_checker or HealthChecker(
            builtin_checks=self.settings.system_collection_enabled
        )

        self.alert_engine.remediation_handler = self._remediate_alert
        self._min_alert_rank = Severity.parse(self.settings.alert_min_severity).rank

        self.counters: dict[str, int] = {
            "metrics_collected": 0,
            "anomalies_detected": 0,
            "collection_errors": 0,
            "forecast_errors": 0,
        }
        self.started_at: float | None = None
        self.last_collection: float | None = None
        self.last_forecast: float | None = None

        self._collection_task: asyncio.Task | None = None
        self._forecast_task: asyncio.Task | None = None
        self._running = False

        self._register_health_checks()

        logger.info(
            "Monitoring manager initialized",
            features=self.settings.enabled_features,
            collection_interval=self.settings.collection_interval,
        )

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the collection and forecasting loops enabled in settings."""
        if self._running:
            return

        self._running = True
        self.started_at = self.clock()
        if self.settings.system_collection_enabled:
            self._collection_task = asyncio.create_task(self._collection_loop())
        if self.settings.predictive_monitoring_enabled:
            self._forecast_task = asyncio.create_task(self._forecast_loop())

        logger.info(
            "Started monitoring",
            collection=self._collection_task is not None,
            forecasting=self._forecast_task is not None,
        )

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        if not self._running:
            return

        self._running = False
        for task in (self._collection_task, self._forecast_task):
            if task:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._collection_task = self._forecast_task = None
        logger.info("Stopped monitoring")

    async def _collection_loop(self) -> None:
        """Main metrics collection loop."""
        while self._running:
            try:
                await self.collect_once()
                await asyncio.sleep(self.settings.collection_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.counters["collection_errors"] += 1
                logger.error("Metrics collection failed", error=str(e))
                await asyncio.sleep(CONSTANTS.LOOP_ERROR_BACKOFF)

    async def _forecast_loop(self) -> None:
        """Main forecasting loop."""
        while self._running:
            try:
                await self.forecast_once()
                await asyncio.sleep(self.settings.forecast_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.counters["forecast_errors"] += 1
                logger.error("Forecasting cycle failed", error=str(e))
                await asyncio.sleep(CONSTANTS.LOOP_ERROR_BACKOFF)

    # Pipeline

    async def ingest(self, resource_id: str, data: MetricData | Mapping[str, Any]) -> IngestResult:
        """Observe a value and evaluate alert rules when it is severe enough.

        Raises:
            ValidationError: If the observation is malformed
        """
        observation = self.store.observe(resource_id, data)
        self.counters["metrics_collected"] += 1
        if observation.severity is not Severity.NORMAL:
            self.counters["anomalies_detected"] += 1

        alerts: list[Alert] = []
        if observation.severity.rank >= self._min_alert_rank:
            alerts = await self.alert_engine.evaluate(observation)
        return IngestResult(observation=observation, alerts=alerts)

    async def collect_once(self) -> list[IngestResult]:
        """Collect host metrics once and push them through the pipeline."""
        results = []
        for data in await self.collector.collect_system_metrics():
            try:
                results.append(await self.ingest(self.collector.resource_id, data))
            except ValidationError as e:
                logger.warning("Rejected collected metric", metric=data.name, error=str(e))
        self.last_collection = self.clock()
        return results

    async def forecast_once(self) -> list[Prediction]:
        """Forecast every observed metric of every resource once."""
        predictions = []
        for resource_id in self.store.resources():
            metrics = {
                sample.name
                for sample in self.store.history(resource_id)
                if not sample.name.endswith(FORECAST_SUFFIX)
            }
            for metric in sorted(metrics):
                prediction = await self.generate_prediction(resource_id, metric=metric)
                if prediction is not None:
                    predictions.append(prediction)
        self.last_forecast = self.clock()
        return predictions

    async def predict(
        self, resource_id: str, window: float | None = None, metric: str | None = None
    ) -> Prediction:
        """Forecast a resource metric and feed the peak back as an observation.

        Raises:
            InsufficientDataError: Not enough history
        """
        prediction = self.forecaster.forecast(resource_id, window=window, metric=metric)
        try:
            await self.ingest(
                resource_id,
                MetricData(
                    name=f"{prediction.metric_name}{FORECAST_SUFFIX}",
                    value=prediction.peak,
                    category="forecast",
                    external_factors={"prediction_id": prediction.id},
                ),
            )
        except ValidationError as e:
            logger.warning("Forecast observation rejected", prediction_id=prediction.id, error=str(e))
        return prediction

    async def generate_prediction(
        self, resource_id: str, window: float | None = None, metric: str | None = None
    ) -> Prediction | None:
        """Like :meth:`predict`, but missing history yields None."""
        try:
            return await self.predict(resource_id, window=window, metric=metric)
        except InsufficientDataError as e:
            logger.debug(
                "Not enough history to forecast",
                resource=resource_id,
                metric=metric,
                available=e.available,
                required=e.required,
            )
            return None

    async def heal(self, issue: Issue) -> HealingRecord:
        """Run self-healing for an issue.

        Raises:
            ConfigurationError: Self-healing is disabled
            NoApplicableRemediationError: No healing rule matches
        """
        if not self.settings.self_healing_enabled:
            raise ConfigurationError("Self-healing is not enabled", resource_id=issue.resource_id)
        return await self.orchestrator.heal(issue)

    async def _remediate_alert(self, alert: Alert, rule: AlertRule) -> None:
        issue = Issue(
            type=rule.remediation_issue_type or rule.id,
            resource_id=alert.resource_id,
            description=alert.message,
            severity=alert.severity.value,
            indicators={alert.metric_name: alert.value},
            alert_id=alert.id,
        )
        try:
            await self.heal(issue)
        except NoApplicableRemediationError as e:
            logger.warning("No remediation for alert", alert_id=alert.id, error=str(e))

    # Reporting

    def engine_stats(self) -> dict[str, int]:
        """Monotonic counters exported as ``healwatch_<name>_total``."""
        return {
            "metrics_collected": self.counters["metrics_collected"],
            "anomalies_detected": self.counters["anomalies_detected"],
            "observations_rejected": self.store.counters["rejected"],
            "alerts_triggered": self.alert_engine.counters["triggered"],
            "alerts_suppressed": self.alert_engine.counters["suppressed"],
            "notification_failures": self.alert_engine.counters["notification_failures"],
            "predictions_generated": self.forecaster.counters["generated"],
            "remediations_executed": self.orchestrator.counters["executed"],
            "remediations_succeeded": self.orchestrator.counters["succeeded"],
        }

    def export_exposition(self) -> bytes:
        return self.store.export_exposition(stats=self.engine_stats())

    def stats(self) -> dict[str, Any]:
        """Aggregate counters plus the redacted configuration."""
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "running": self._running,
            "uptime_seconds": self.clock() - self.started_at if self.started_at else 0.0,
            "features": self.settings.enabled_features,
            "stats": self.engine_stats(),
            "configuration": self.settings.redacted(),
        }

    def analytics(self) -> dict[str, Any]:
        """Per-subsystem analytics for the enabled features."""
        engine = self.alert_engine
        analytics: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "metrics": {
                "metrics_collected": self.counters["metrics_collected"],
                "active_series": len(self.store.metrics()),
                "resources": len(self.store.resources()),
                "anomalies_detected": self.counters["anomalies_detected"],
            },
            "alerting": {
                "alerts_triggered": engine.counters["triggered"],
                "alerts_suppressed": engine.counters["suppressed"],
                "active_alerts": len(engine.active_alerts()),
                "alert_rules": len(engine.rules),
                "channels": sorted(engine.channels),
            },
            "overall_health": {
                "alert_noise": self._alert_noise(),
                "healing_effectiveness": self.orchestrator.effectiveness_rate(),
            },
        }
        if self.settings.predictive_monitoring_enabled:
            analytics["predictive"] = {
                "predictions_generated": self.forecaster.counters["generated"],
                "active_predictions": len(self.forecaster.active_predictions()),
                "insufficient_data": self.forecaster.counters["insufficient_data"],
                "model": self.forecaster.model.name,
            }
        if self.settings.self_healing_enabled:
            analytics["self_healing"] = {
                "automated_remediation": self.settings.automated_remediation_enabled,
                "remediations_executed": self.orchestrator.counters["executed"],
                "success_rate": self.orchestrator.success_rate(),
                "healing_rules": len(self.orchestrator.rules),
                "remediation_actions": len(self.orchestrator.actions),
            }
        return analytics

    def _alert_noise(self) -> float:
        """Percentage of alert evaluations that ended suppressed."""
        evaluations = self.alert_engine.counters["evaluations"]
        if not evaluations:
            return 0.0
        return self.alert_engine.counters["suppressed"] / evaluations * 100

    # Health

    def _register_health_checks(self) -> None:
        self.health_checker.register_check("metric_store", self._check_metric_store, critical=True)
        self.health_checker.register_check("alert_engine", self._check_alert_engine, critical=True)
        self.health_checker.register_check("forecaster", self._check_forecaster)
        self.health_checker.register_check("self_healing", self._check_self_healing)

    @staticmethod
    def _task_failed(task: asyncio.Task | None) -> bool:
        return task is not None and task.done() and not task.cancelled()

    async def _check_metric_store(self) -> HealthCheckResult:
        details = {
            "series": len(self.store.metrics()),
            "resources": len(self.store.resources()),
            "last_collection": self.last_collection,
        }
        if self._task_failed(self._collection_task):
            return HealthCheckResult(
                "metric_store", HealthStatus.UNHEALTHY, "Collection loop stopped", details=details
            )
        stale_after = self.settings.collection_interval * 3
        if (
            self._collection_task is not None
            and self.last_collection is not None
            and self.clock() - self.last_collection > stale_after
        ):
            return HealthCheckResult(
                "metric_store", HealthStatus.DEGRADED, "Collection is lagging", details=details
            )
        return HealthCheckResult("metric_store", HealthStatus.HEALTHY, "OK", details=details)

    async def _check_alert_engine(self) -> HealthCheckResult:
        details = {
            "rules": len(self.alert_engine.rules),
            "active_alerts": len(self.alert_engine.active_alerts()),
        }
        return HealthCheckResult("alert_engine", HealthStatus.HEALTHY, "OK", details=details)

    async def _check_forecaster(self) -> HealthCheckResult:
        if not self.settings.predictive_monitoring_enabled:
            return HealthCheckResult(
                "forecaster", HealthStatus.HEALTHY, "Disabled", details={"enabled": False}
            )
        details = {"enabled": True, "active_predictions": len(self.forecaster.active_predictions())}
        if self._task_failed(self._forecast_task):
            return HealthCheckResult(
                "forecaster", HealthStatus.UNHEALTHY, "Forecast loop stopped", details=details
            )
        return HealthCheckResult("forecaster", HealthStatus.HEALTHY, "OK", details=details)

    async def _check_self_healing(self) -> HealthCheckResult:
        if not self.settings.self_healing_enabled:
            return HealthCheckResult(
                "self_healing", HealthStatus.HEALTHY, "Disabled", details={"enabled": False}
            )
        rate = self.orchestrator.success_rate()
        details = {"enabled": True, "success_rate": rate, "records": len(self.orchestrator.records)}
        if rate < 50:
            return HealthCheckResult(
                "self_healing", HealthStatus.DEGRADED, "Low remediation success rate", details=details
            )
        return HealthCheckResult("self_healing", HealthStatus.HEALTHY, "OK", details=details)

    async def check_health(self) -> dict[str, Any]:
        return await self.health_checker.check_health()

    async def shutdown(self) -> None:
        await self.stop()
        logger.info("Monitoring manager shutdown")


# Global monitoring manager instance
monitoring_manager = MonitoringManager()
