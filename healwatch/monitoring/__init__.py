"""Monitoring, alerting, forecasting and self-healing engine.

This package provides:
- A metric store with per-resource baselines and severity classification
- A rule-based alert engine with suppression, correlation and notification channels
- Time-series forecasting with issue detection and recommendations
- A self-healing orchestrator running remediation actions
- Grafana dashboard management and Prometheus exposition
- Health checks across the monitoring subsystems
"""

from .alerts import Alert, AlertRule, AlertRuleEngine, AlertStatus
from .baseline import Baseline, Severity, Trend
from .dashboard_provisioner import DashboardProvisioner
from .dashboards import Dashboard, DashboardConfig, DashboardManager
from .forecasting import Forecaster, Prediction
from .healing import HealingOrchestrator, HealingRecord, HealingRule, Issue, RemediationAction
from .health import HealthChecker, HealthConfig, HealthStatus
from .manager import MonitoringManager, monitoring_manager
from .metrics import MetricsCollector
from .store import ClassifiedObservation, MetricData, MetricStore

__all__ = [
    "MetricStore",
    "MetricData",
    "ClassifiedObservation",
    "Baseline",
    "Severity",
    "Trend",
    "AlertRuleEngine",
    "AlertRule",
    "Alert",
    "AlertStatus",
    "Forecaster",
    "Prediction",
    "HealingOrchestrator",
    "HealingRule",
    "HealingRecord",
    "RemediationAction",
    "Issue",
    "DashboardManager",
    "DashboardProvisioner",
    "Dashboard",
    "DashboardConfig",
    "HealthChecker",
    "HealthConfig",
    "HealthStatus",
    "MetricsCollector",
    "MonitoringManager",
    "monitoring_manager",
]
