"""On-disk Grafana and Prometheus provisioning.

Writes every registered dashboard as an import envelope, the Grafana
provisioning and datasource files, the exported alert rules and a Prometheus
scrape configuration pointing at the ``/metrics`` endpoint.
"""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import structlog
import yaml

from ..constants import CONSTANTS
from .alerts import AlertRule
from .dashboards import DashboardConfig, DashboardManager

logger = structlog.get_logger(__name__)


class DashboardProvisioner:
    """Writes dashboards and monitoring configuration to disk."""

    def __init__(
        self,
        manager: DashboardManager | None = None,
        config: DashboardConfig | None = None,
        output_dir: Path | None = None,
        scrape_target: str = f"host.docker.internal:{CONSTANTS.DEFAULT_API_PORT}",
    ):
        """Initialize dashboard provisioner.

        Args:
            manager: Dashboard registry to provision from
            config: Dashboard configuration; taken from the manager if omitted
            output_dir: Directory for the Prometheus and alert files
            scrape_target: host:port Prometheus scrapes
        """
        self.manager = manager or DashboardManager(config)
        self.config = config or self.manager.config
        self.output_dir = Path(output_dir or CONSTANTS.DEFAULT_OUTPUT_DIR)
        self.scrape_target = scrape_target
        self._validate_config()

    def _validate_config(self) -> None:
        if not self.config.prometheus_url:
            raise ValueError("Prometheus URL is required for dashboard provisioning")
        if not self.config.dashboards_dir or not self.config.provisioning_dir:
            raise ValueError("Dashboard and provisioning directories must be configured")

    def _ensure_directories(self) -> None:
        self.config.dashboards_dir.mkdir(parents=True, exist_ok=True)
        (self.config.provisioning_dir / "dashboards").mkdir(parents=True, exist_ok=True)
        (self.config.provisioning_dir / "datasources").mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def provision_all(self, rules: Iterable[AlertRule] = ()) -> list[Path]:
        """Write every dashboard and supporting configuration file.

        Args:
            rules: Alert rules to export alongside the dashboards

        Returns:
            Paths of the files written
        """
        logger.info("Starting dashboard provisioning", dashboards_dir=str(self.config.dashboards_dir))
        self._ensure_directories()

        try:
            written = [
                self._write_json(
                    self.config.dashboards_dir / f"{entry['id']}.json",
                    self.manager.export_dashboard(entry["id"]),
                )
                for entry in self.manager.list_dashboards()
            ]
            written.extend(self._create_provisioning_files())
            written.append(
                self._write_json(self.output_dir / "alert-rules.json", self.manager.export_alerts(rules))
            )
            written.append(self.create_prometheus_config())
        except OSError as e:
            logger.error("Dashboard provisioning failed", error=str(e))
            raise

        logger.info("Dashboard provisioning completed", files=len(written))
        return written

    def _write_json(self, path: Path, document: dict[str, Any]) -> Path:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
        logger.debug("Wrote file", file=str(path))
        return path

    def _write_yaml(self, path: Path, document: dict[str, Any]) -> Path:
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(document, f, default_flow_style=False)
        logger.debug("Wrote file", file=str(path))
        return path

    def _create_provisioning_files(self) -> list[Path]:
        return [
            self._write_yaml(
                self.config.provisioning_dir / "dashboards" / "dashboards.yaml",
                self.manager.create_provisioning_config(),
            ),
            self._write_yaml(
                self.config.provisioning_dir / "datasources" / "datasources.yaml",
                self.manager.create_datasource_config(),
            ),
        ]

    def create_prometheus_config(self) -> Path:
        """Create the Prometheus scrape configuration file."""
        prometheus_config = {
            "global": {"scrape_interval": "15s", "evaluation_interval": "15s"},
            "scrape_configs": [
                {
                    "job_name": "healwatch",
                    "static_configs": [{"targets": [self.scrape_target]}],
                    "scrape_interval": "15s",
                    "metrics_path": "/metrics",
                }
            ],
        }
        return self._write_yaml(self.output_dir / "prometheus.yml", prometheus_config)

    def validate_dashboards(self) -> bool:
        """Validate all dashboard files on disk.

        Returns:
            True if all dashboards are valid, False otherwise
        """
        dashboard_files = sorted(self.config.dashboards_dir.glob("*.json"))
        if not dashboard_files:
            logger.warning("No dashboard files found for validation")
            return False

        results = [self._validate_single_dashboard(path) for path in dashboard_files]
        if all(results):
            logger.info("All dashboards validated successfully", dashboard_count=len(dashboard_files))
        else:
            logger.error("Some dashboards failed validation")
        return all(results)

    def _validate_single_dashboard(self, dashboard_path: Path) -> bool:
        try:
            with open(dashboard_path, encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in dashboard file", file=str(dashboard_path), error=str(e))
            return False

        dashboard = document.get("dashboard") if isinstance(document, dict) else None
        if not isinstance(dashboard, dict):
            logger.error("Invalid dashboard structure: missing 'dashboard' key", file=str(dashboard_path))
            return False

        for required in ("title", "panels"):
            if required not in dashboard:
                logger.error(f"Invalid dashboard: missing '{required}' field", file=str(dashboard_path))
                return False

        return all(self._validate_panel(panel, dashboard_path) for panel in dashboard["panels"])

    def _validate_panel(self, panel: dict[str, Any], dashboard_path: Path) -> bool:
        for required in ("id", "title", "type"):
            if required not in panel:
                logger.error(
                    f"Invalid panel: missing '{required}' field",
                    file=str(dashboard_path),
                    panel_id=panel.get("id", "unknown"),
                )
                return False

        for target in panel.get("targets") or []:
            if "expr" not in target:
                logger.error(
                    "Panel target missing 'expr' field", file=str(dashboard_path), panel_id=panel.get("id")
                )
                return False
        return True
