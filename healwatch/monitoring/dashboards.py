"""Grafana-compatible dashboard definitions and alert rule export.

Dashboards are kept as plain Grafana JSON structures so that exporting and
re-importing them preserves panels, titles and query expressions exactly.
"""

import copy
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from ..constants import CONSTANTS
from ..core.exceptions import ValidationError
from .alerts import AlertRule

logger = structlog.get_logger(__name__)

# Grafana legacy evaluator types; both are strict, so only strict comparisons map
EVALUATOR_TYPES = {">": "gt", "<": "lt"}


@dataclass(frozen=True)
class DashboardConfig:
    """Configuration for dashboard generation and provisioning."""

    prometheus_url: str = CONSTANTS.DEFAULT_PROMETHEUS_URL
    datasource_name: str = "Prometheus"
    refresh_interval: str = "30s"
    time_range: str = "1h"
    alert_frequency: str = "1m"
    dashboards_dir: Path = Path(CONSTANTS.DEFAULT_OUTPUT_DIR) / "grafana" / "dashboards"
    provisioning_dir: Path = Path(CONSTANTS.DEFAULT_OUTPUT_DIR) / "grafana" / "provisioning"


@dataclass
class Dashboard:
    """A dashboard in Grafana's JSON model."""

    uid: str
    title: str
    tags: list[str] = field(default_factory=list)
    panels: list[dict[str, Any]] = field(default_factory=list)
    description: str = ""
    timezone: str = "browser"
    refresh: str = "30s"
    time: dict[str, str] = field(default_factory=lambda: {"from": "now-1h", "to": "now"})
    templating: dict[str, Any] = field(default_factory=lambda: {"list": []})

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags),
            "timezone": self.timezone,
            "refresh": self.refresh,
            "time": dict(self.time),
            "templating": copy.deepcopy(self.templating),
            "panels": copy.deepcopy(self.panels),
        }

    @property
    def expressions(self) -> list[str]:
        return [target.get("expr", "") for panel in self.panels for target in panel.get("targets", [])]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], uid: str | None = None) -> "Dashboard":
        """Build from a Grafana dashboard model.

        Raises:
            ValidationError: If required fields are missing or malformed
        """
        if not isinstance(data, Mapping):
            raise ValidationError("Dashboard must be a JSON object", field="dashboard")
        title = data.get("title")
        if not isinstance(title, str) or not title:
            raise ValidationError("Dashboard title is required", field="title")
        panels = data.get("panels", [])
        if not isinstance(panels, list) or not all(isinstance(p, Mapping) for p in panels):
            raise ValidationError("Dashboard panels must be a list of objects", field="panels")
        for panel in panels:
            if not isinstance(panel.get("targets", []), list):
                raise ValidationError("Panel targets must be a list", field="targets")

        dashboard_uid = uid or data.get("uid") or _slugify(title)
        return cls(
            uid=dashboard_uid,
            title=title,
            tags=[str(tag) for tag in data.get("tags", [])],
            panels=copy.deepcopy([dict(panel) for panel in panels]),
            description=data.get("description", ""),
            timezone=data.get("timezone", "browser"),
            refresh=data.get("refresh", "30s"),
            time=dict(data.get("time") or {"from": "now-1h", "to": "now"}),
            templating=copy.deepcopy(data.get("templating") or {"list": []}),
        )


def _slugify(title: str) -> str:
    slug = "".join(ch if ch.isalnum() else "-" for ch in title.lower())
    return "-".join(part for part in slug.split("-") if part)


class DashboardManager:
    """Holds dashboard definitions and renders them for Grafana."""

    def __init__(self, config: DashboardConfig | None = None, load_defaults: bool = True):
        """Initialize the dashboard manager.

        Args:
            config: Dashboard configuration settings
            load_defaults: Register the built-in dashboards
        """
        self.config = config or DashboardConfig()
        self._dashboards: dict[str, Dashboard] = {}
        if load_defaults:
            for dashboard in self.default_dashboards():
                self._dashboards[dashboard.uid] = dashboard

    def default_dashboards(self) -> list[Dashboard]:
        return [
            self.generate_system_overview_dashboard(),
            self.generate_application_performance_dashboard(),
            self.generate_alerting_dashboard(),
            self.generate_predictive_dashboard(),
        ]

    def _dashboard(self, uid: str, title: str, tags: list[str], panels: list[dict]) -> Dashboard:
        return Dashboard(
            uid=uid,
            title=title,
            tags=tags,
            panels=panels,
            refresh=self.config.refresh_interval,
            time={"from": f"now-{self.config.time_range}", "to": "now"},
        )

    def generate_system_overview_dashboard(self) -> Dashboard:
        """System overview following the USE methodology.

        Utilization, saturation and errors of the monitored resources.
        """
        return self._dashboard(
            "system-overview",
            "Healwatch - System Overview",
            ["healwatch", "system", "overview"],
            [
                self._create_utilization_panel(1, "CPU Utilization", "cpu_usage", 70, 90, 0, 0),
                self._create_utilization_panel(2, "Memory Utilization", "memory_usage", 80, 95, 12, 0),
                self._create_utilization_panel(3, "Disk Utilization", "disk_usage", 85, 95, 0, 8),
                self._create_system_load_panel(),
            ],
        )

    def generate_application_performance_dashboard(self) -> Dashboard:
        """HTTP request metrics following the RED methodology."""
        return self._dashboard(
            "app-performance",
            "Healwatch - Application Performance",
            ["healwatch", "application", "performance"],
            [
                self._create_request_rate_panel(),
                self._create_request_duration_panel(),
                self._create_error_rate_panel(),
            ],
        )

    def generate_alerting_dashboard(self) -> Dashboard:
        """Alert volume and self-healing outcomes."""
        return self._dashboard(
            "alerting-healing",
            "Healwatch - Alerting & Self-Healing",
            ["healwatch", "alerting", "self-healing"],
            [
                self._create_counter_rate_panel(
                    30, "Alerts Triggered", "alerts_triggered", "Alerts/min", 0, 0
                ),
                self._create_counter_rate_panel(
                    31, "Alerts Suppressed", "alerts_suppressed", "Suppressed/min", 12, 0
                ),
                self._create_counter_rate_panel(
                    32, "Remediations Executed", "remediations_executed", "Remediations/min", 0, 8
                ),
                self._create_healing_success_panel(),
            ],
        )

    def generate_predictive_dashboard(self) -> Dashboard:
        """Forecast values next to observed values."""
        return self._dashboard(
            "predictive",
            "Healwatch - Predictive Monitoring",
            ["healwatch", "predictive", "forecast"],
            [
                self._create_forecast_panel(40, "CPU Forecast", "cpu_usage", 0, 0),
                self._create_forecast_panel(41, "Memory Forecast", "memory_usage", 12, 0),
                self._create_counter_rate_panel(
                    42, "Predictions Generated", "predictions_generated", "Predictions/min", 0, 8
                ),
            ],
        )

    def _create_utilization_panel(
        self, panel_id: int, title: str, metric: str, warn: float, crit: float, x: int, y: int
    ) -> dict[str, Any]:
        return {
            "id": panel_id,
            "title": title,
            "type": "stat",
            "targets": [{"expr": f"max by (resource) ({metric})", "legendFormat": "{{resource}}", "refId": "A"}],
            "fieldConfig": {
                "defaults": {
                    "unit": "percent",
                    "thresholds": {
                        "steps": [
                            {"color": "green", "value": None},
                            {"color": "yellow", "value": warn},
                            {"color": "red", "value": crit},
                        ]
                    },
                }
            },
            "gridPos": {"h": 8, "w": 12, "x": x, "y": y},
        }

    def _create_system_load_panel(self) -> dict[str, Any]:
        """Create system load average panel."""
        return {
            "id": 4,
            "title": "System Load Average",
            "type": "timeseries",
            "targets": [{"expr": "system_load", "legendFormat": "{{resource}}", "refId": "A"}],
            "gridPos": {"h": 8, "w": 12, "x": 12, "y": 8},
        }

    def _create_request_rate_panel(self) -> dict[str, Any]:
        """Create request rate panel following RED methodology."""
        return {
            "id": 10,
            "title": "Request Rate",
            "type": "timeseries",
            "targets": [
                {"expr": "rate(http_requests_total[5m])", "legendFormat": "Requests/sec", "refId": "A"}
            ],
            "fieldConfig": {"defaults": {"unit": "reqps"}},
            "gridPos": {"h": 8, "w": 12, "x": 0, "y": 0},
        }

    def _create_request_duration_panel(self) -> dict[str, Any]:
        """Create request duration panel."""
        return {
            "id": 11,
            "title": "Request Duration",
            "type": "timeseries",
            "targets": [
                {
                    "expr": "histogram_quantile(0.95, rate(http_request_duration_seconds_bucket[5m]))",
                    "legendFormat": "95th percentile",
                    "refId": "A",
                },
                {
                    "expr": "histogram_quantile(0.50, rate(http_request_duration_seconds_bucket[5m]))",
                    "legendFormat": "50th percentile",
                    "refId": "B",
                },
            ],
            "fieldConfig": {"defaults": {"unit": "s"}},
            "gridPos": {"h": 8, "w": 12, "x": 12, "y": 0},
        }

    def _create_error_rate_panel(self) -> dict[str, Any]:
        """Create error rate panel following RED methodology."""
        return {
            "id": 12,
            "title": "Error Rate",
            "type": "stat",
            "targets": [
                {
                    "expr": 'sum(rate(http_requests_total{status=~"5.."}[5m])) / sum(rate(http_requests_total[5m])) * 100',
                    "legendFormat": "Error Rate %",
                    "refId": "A",
                }
            ],
            "fieldConfig": {
                "defaults": {
                    "unit": "percent",
                    "thresholds": {
                        "steps": [
                            {"color": "green", "value": None},
                            {"color": "yellow", "value": 1},
                            {"color": "red", "value": 5},
                        ]
                    },
                }
            },
            "gridPos": {"h": 8, "w": 24, "x": 0, "y": 8},
        }

    def _create_counter_rate_panel(
        self, panel_id: int, title: str, stat: str, legend: str, x: int, y: int
    ) -> dict[str, Any]:
        return {
            "id": panel_id,
            "title": title,
            "type": "timeseries",
            "targets": [
                {
                    "expr": f"rate({CONSTANTS.ENGINE_METRIC_PREFIX}_{stat}_total[5m]) * 60",
                    "legendFormat": legend,
                    "refId": "A",
                }
            ],
            "gridPos": {"h": 8, "w": 12, "x": x, "y": y},
        }

    def _create_healing_success_panel(self) -> dict[str, Any]:
        """Create remediation success ratio panel."""
        prefix = CONSTANTS.ENGINE_METRIC_PREFIX
        return {
            "id": 33,
            "title": "Healing Success Rate",
            "type": "gauge",
            "targets": [
                {
                    "expr": f"{prefix}_remediations_succeeded_total / clamp_min({prefix}_remediations_executed_total, 1) * 100",
                    "legendFormat": "Success %",
                    "refId": "A",
                }
            ],
            "fieldConfig": {"defaults": {"unit": "percent", "min": 0, "max": 100}},
            "gridPos": {"h": 8, "w": 12, "x": 12, "y": 8},
        }

    def _create_forecast_panel(
        self, panel_id: int, title: str, metric: str, x: int, y: int
    ) -> dict[str, Any]:
        return {
            "id": panel_id,
            "title": title,
            "type": "timeseries",
            "targets": [
                {"expr": metric, "legendFormat": "{{resource}} observed", "refId": "A"},
                {"expr": f"{metric}_forecast", "legendFormat": "{{resource}} forecast", "refId": "B"},
            ],
            "fieldConfig": {"defaults": {"unit": "percent"}},
            "gridPos": {"h": 8, "w": 12, "x": x, "y": y},
        }

    # Registry operations

    def list_dashboards(self) -> list[dict[str, Any]]:
        return [
            {"id": uid, "title": dashboard.title, "tags": list(dashboard.tags)}
            for uid, dashboard in self._dashboards.items()
        ]

    def get_dashboard(self, dashboard_id: str) -> Dashboard | None:
        return self._dashboards.get(dashboard_id)

    def export_dashboard(self, dashboard_id: str) -> dict[str, Any] | None:
        """Dashboard wrapped in Grafana's import envelope.

        Returns:
            The envelope, or None for an unknown id
        """
        dashboard = self._dashboards.get(dashboard_id)
        if dashboard is None:
            return None
        return {
            "dashboard": {
                **dashboard.to_dict(),
                "id": None,
                "version": 1,
                "schemaVersion": CONSTANTS.DASHBOARD_SCHEMA_VERSION,
            },
            "folderId": 0,
            "overwrite": True,
        }

    def export_dashboard_json(self, dashboard_id: str) -> str | None:
        envelope = self.export_dashboard(dashboard_id)
        return None if envelope is None else json.dumps(envelope, indent=2)

    def import_dashboard(self, document: Mapping[str, Any] | str, dashboard_id: str | None = None) -> Dashboard:
        """Register a dashboard from an export envelope or a bare dashboard model.

        Raises:
            ValidationError: If the document is not a valid dashboard
        """
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise ValidationError("Dashboard is not valid JSON", cause=e) from e
        if not isinstance(document, Mapping):
            raise ValidationError("Dashboard must be a JSON object", field="dashboard")

        model = document.get("dashboard", document)
        dashboard = Dashboard.from_dict(model, uid=dashboard_id)
        self._dashboards[dashboard.uid] = dashboard
        logger.info("Imported dashboard", dashboard=dashboard.uid, panels=len(dashboard.panels))
        return dashboard

    def create_custom_dashboard(
        self,
        dashboard_id: str,
        title: str,
        panels: list[dict[str, Any]],
        tags: list[str] | None = None,
    ) -> Dashboard:
        dashboard = Dashboard.from_dict(
            {"title": title, "tags": tags or [], "panels": panels}, uid=dashboard_id
        )
        dashboard.refresh = self.config.refresh_interval
        dashboard.time = {"from": f"now-{self.config.time_range}", "to": "now"}
        self._dashboards[dashboard_id] = dashboard
        logger.info("Created custom dashboard", dashboard=dashboard_id)
        return dashboard

    def remove_dashboard(self, dashboard_id: str) -> bool:
        return self._dashboards.pop(dashboard_id, None) is not None

    def export_alerts(self, rules: Iterable[AlertRule]) -> dict[str, Any]:
        """Render alert rules as Grafana legacy alert definitions.

        Rules without a strict numeric threshold clause cannot be expressed as
        a query and legacy evaluator, and are left out.
        """
        alerts = []
        for rule in rules:
            clause = rule.parsed.threshold_clause()
            if clause is None:
                logger.debug("Alert rule has no numeric threshold, not exported", rule=rule.id)
                continue
            if clause.op not in EVALUATOR_TYPES:
                logger.debug(
                    "Alert rule comparison has no evaluator, not exported", rule=rule.id, op=clause.op
                )
                continue
            alerts.append(
                {
                    "alert": {
                        "uid": rule.id,
                        "name": rule.title,
                        "message": rule.description,
                        "severity": rule.severity.value,
                        "frequency": self.config.alert_frequency,
                        "conditions": [
                            {
                                "type": "query",
                                "query": {
                                    "queryType": "",
                                    "refId": "A",
                                    "model": {"expr": self._alert_query(rule, clause.field), "refId": "A"},
                                },
                                "reducer": {"type": "last", "params": []},
                                "evaluator": {
                                    "params": [clause.literal],
                                    "type": EVALUATOR_TYPES[clause.op],
                                },
                                "operator": clause.op,
                            }
                        ],
                        "notifications": list(rule.channels),
                        "enabled": rule.enabled,
                    }
                }
            )
        return {"alerts": alerts}

    def _alert_query(self, rule: AlertRule, metric: str) -> str:
        exact = [r for r in rule.resources if not any(ch in r for ch in "*?[")]
        if exact and len(exact) == len(rule.resources):
            return f'{metric}{{resource=~"{"|".join(exact)}"}}'
        return metric

    def create_provisioning_config(self) -> dict[str, Any]:
        """Create Grafana provisioning configuration.

        Returns:
            Provisioning configuration for dashboards
        """
        return {
            "apiVersion": 1,
            "providers": [
                {
                    "name": "healwatch-dashboards",
                    "orgId": 1,
                    "folder": "",
                    "type": "file",
                    "disableDeletion": False,
                    "updateIntervalSeconds": 10,
                    "allowUiUpdates": True,
                    "options": {"path": "/etc/grafana/provisioning/dashboards"},
                }
            ],
        }

    def create_datasource_config(self) -> dict[str, Any]:
        """Create Grafana datasource configuration for Prometheus.

        Returns:
            Datasource configuration
        """
        return {
            "apiVersion": 1,
            "datasources": [
                {
                    "name": self.config.datasource_name,
                    "type": "prometheus",
                    "access": "proxy",
                    "url": self.config.prometheus_url,
                    "isDefault": True,
                    "editable": True,
                }
            ],
        }
