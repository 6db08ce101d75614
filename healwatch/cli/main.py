"""Command-line interface for the monitoring service.

Provides commands for serving the API, managing Grafana dashboards and
inspecting the resolved configuration.
"""

import json
from dataclasses import replace
from pathlib import Path
from typing import Optional

import structlog
import typer
import yaml

from ..constants import CONSTANTS
from ..core.config import MonitoringSettings
from ..core.exceptions import MonitoringError
from ..utils.logging import setup_logging

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="healwatch", help="Monitoring, alerting and self-healing service", no_args_is_help=True
)
dashboards_app = typer.Typer(
    name="dashboards", help="Manage Grafana dashboards and provisioning", no_args_is_help=True
)
config_app = typer.Typer(name="config", help="Inspect monitoring configuration", no_args_is_help=True)
app.add_typer(dashboards_app)
app.add_typer(config_app)


def _load_settings(config_file: Optional[Path]) -> MonitoringSettings:
    if config_file is None:
        return MonitoringSettings.from_env()
    from ..config.loader import load_settings_from_file

    return load_settings_from_file(config_file)


@app.command()
def serve(
    host: str = typer.Option(CONSTANTS.LOCALHOST_IP, "--host", "-h", help="Interface to bind"),
    port: int = typer.Option(CONSTANTS.DEFAULT_API_PORT, "--port", "-p", help="Port to listen on"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML or JSON configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Run the monitoring API with collection and forecasting loops."""
    import uvicorn

    from ..api.main import create_app
    from ..monitoring.manager import MonitoringManager

    setup_logging(verbose=verbose, json_logs=json_logs)
    try:
        settings = _load_settings(config_file)
    except (FileNotFoundError, MonitoringError) as e:
        typer.echo(f"❌ Error: {e}", err=True)
        raise typer.Exit(1)

    logger.info("Starting API server", host=host, port=port, features=settings.enabled_features)
    uvicorn.run(create_app(MonitoringManager(settings)), host=host, port=port, log_config=None)


# Dashboards


def _dashboard_manager(prometheus_url: Optional[str] = None, output_dir: Optional[Path] = None):
    from ..monitoring.dashboards import DashboardConfig, DashboardManager

    config = DashboardConfig()
    if prometheus_url:
        config = replace(config, prometheus_url=prometheus_url)
    if output_dir:
        config = replace(
            config,
            dashboards_dir=output_dir / "grafana" / "dashboards",
            provisioning_dir=output_dir / "grafana" / "provisioning",
        )
    return DashboardManager(config)


@dashboards_app.command("list")
def list_dashboards() -> None:
    """List the built-in dashboards."""
    for entry in _dashboard_manager().list_dashboards():
        tags = ", ".join(entry["tags"])
        typer.echo(f"{entry['id']:<24} {entry['title']}" + (f"  [{tags}]" if tags else ""))


@dashboards_app.command("export")
def export_dashboard(
    dashboard_id: str = typer.Argument(..., help="Dashboard id"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
) -> None:
    """Export a dashboard as a Grafana import document."""
    document = _dashboard_manager().export_dashboard_json(dashboard_id)
    if document is None:
        typer.echo(f"❌ Dashboard not found: {dashboard_id}", err=True)
        raise typer.Exit(1)

    if output:
        output.write_text(document, encoding="utf-8")
        typer.echo(f"✅ Exported {dashboard_id} to {output}")
    else:
        typer.echo(document)


@dashboards_app.command("provision")
def provision(
    output_dir: Path = typer.Option(
        Path(CONSTANTS.DEFAULT_OUTPUT_DIR), "--output", "-o", help="Output directory"
    ),
    prometheus_url: Optional[str] = typer.Option(
        None, "--prometheus-url", "-p", help="Prometheus server URL"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file with alert settings"
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite existing files without confirmation"
    ),
) -> None:
    """Write dashboards, Grafana provisioning, alert rules and Prometheus config."""
    from ..monitoring.alerts import AlertRuleEngine
    from ..monitoring.dashboard_provisioner import DashboardProvisioner

    try:
        settings = _load_settings(config_file)
        manager = _dashboard_manager(prometheus_url, output_dir)

        if (
            not force
            and manager.config.dashboards_dir.exists()
            and not typer.confirm(
                f"Dashboard directory {manager.config.dashboards_dir} already exists. Continue?"
            )
        ):
            typer.echo("Provisioning cancelled.")
            raise typer.Abort()

        provisioner = DashboardProvisioner(manager, output_dir=output_dir)
        rules = AlertRuleEngine(settings).rules.values()
        written = provisioner.provision_all(rules)
    except (OSError, MonitoringError, ValueError) as e:
        logger.error("Dashboard provisioning failed", error=str(e))
        typer.echo(f"❌ Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Provisioned {len(written)} files")
    typer.echo(f"📁 Dashboards: {manager.config.dashboards_dir}")
    typer.echo(f"⚙️  Provisioning: {manager.config.provisioning_dir}")


@dashboards_app.command("validate")
def validate(
    output_dir: Path = typer.Option(
        Path(CONSTANTS.DEFAULT_OUTPUT_DIR), "--output", "-o", help="Directory used for provisioning"
    ),
) -> None:
    """Validate provisioned dashboard files."""
    from ..monitoring.dashboard_provisioner import DashboardProvisioner

    provisioner = DashboardProvisioner(_dashboard_manager(output_dir=output_dir), output_dir=output_dir)
    if provisioner.validate_dashboards():
        typer.echo("✅ All dashboards are valid")
    else:
        typer.echo("❌ Dashboard validation failed", err=True)
        raise typer.Exit(1)


# Configuration


@config_app.command("show")
def show_config(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a YAML or JSON configuration file"
    ),
    output_format: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml or json"),
) -> None:
    """Print the resolved configuration with secrets redacted."""
    try:
        data = _load_settings(config_file).redacted()
    except (FileNotFoundError, MonitoringError) as e:
        typer.echo(f"❌ Error: {e}", err=True)
        raise typer.Exit(1)

    if output_format.lower() == "json":
        typer.echo(json.dumps(data, indent=2, sort_keys=True))
    else:
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())


@config_app.command("example")
def example_config(
    output: Path = typer.Argument(..., help="Where to write the example configuration"),
    output_format: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml or json"),
) -> None:
    """Write an example configuration file."""
    from ..config.loader import ConfigLoader

    try:
        ConfigLoader.save_example_config(output, output_format)
    except MonitoringError as e:
        typer.echo(f"❌ Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"✅ Wrote example configuration to {output}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
