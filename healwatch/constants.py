"""Centralized constants and defaults for the monitoring engine.

Runtime tunables live in :class:`healwatch.core.config.MonitoringSettings`;
the values here are the documented defaults it falls back to.
"""

from os import environ

# Environment variable prefix for settings
ENV_PREFIX: str = "HEALWATCH_"

# Scheduling (seconds)
DEFAULT_COLLECTION_INTERVAL: float = 15.0
DEFAULT_FORECAST_INTERVAL: float = 60.0
DEFAULT_FORECAST_WINDOW: float = 3600.0  # 1 hour
LOOP_ERROR_BACKOFF: float = 5.0

# Baseline and classification
DEFAULT_SEVERITY_MEDIUM: float = 0.1
DEFAULT_SEVERITY_HIGH: float = 0.3
DEFAULT_SEVERITY_CRITICAL: float = 0.5
DEFAULT_BASELINE_MIN_SAMPLES: int = 5
DEFAULT_DEVIATION_EPSILON: float = 1e-9
DEFAULT_TREND_WINDOW: int = 5
DEFAULT_TREND_TOLERANCE: float = 0.05

# Capacities
DEFAULT_HISTORY_CAPACITY: int = 1000
DEFAULT_ALERT_CAPACITY: int = 10_000
DEFAULT_PREDICTION_CAPACITY: int = 1000

# Alerting
DEFAULT_ALERT_COOLDOWN: float = 900.0  # 15 minutes
DEFAULT_CORRELATION_WINDOW: float = 300.0  # 5 minutes
DEFAULT_ALERT_MIN_SEVERITY: str = "high"
SEVERITY_WEIGHTS: dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}
DEFAULT_SUGGESTED_ACTIONS: tuple[str, ...] = ("check_system_load", "review_processes")

# Forecasting
DEFAULT_FORECAST_MIN_SAMPLES: int = 10
DEFAULT_FORECAST_MODEL: str = "linear"
DEFAULT_FORECAST_MAX_STEPS: int = 240
DEFAULT_FORECAST_THRESHOLDS: dict[str, float] = {
    "cpu_usage": 90.0,
    "memory_usage": 90.0,
    "disk_usage": 95.0,
}
RISK_WEIGHT_PER_ISSUE: float = 0.3

# Self-healing
DEFAULT_REMEDIATION_TIMEOUT: float = 30.0

# Notifications
DEFAULT_SMTP_HOST: str = "localhost"
DEFAULT_SMTP_PORT: int = 587
DEFAULT_FROM_EMAIL: str = "alerts@healwatch.local"
DEFAULT_WEBHOOK_TIMEOUT: float = 10.0
REDACTED_VALUE: str = "***"

# Exposition
EXPOSITION_CONTENT_TYPE: str = "text/plain; version=0.0.4; charset=utf-8"
ENGINE_METRIC_PREFIX: str = "healwatch"

# Dashboards / Grafana
DEFAULT_OUTPUT_DIR: str = environ.get("OUTPUT_DIR", "monitoring_output")
DEFAULT_PROMETHEUS_URL: str = environ.get("DEFAULT_PROMETHEUS_URL", "http://prometheus:9090")
DASHBOARD_SCHEMA_VERSION: int = 16

# HTTP Status codes
HTTP_STATUS_SERVER_ERROR: int = 500

# API Error Messages
ERROR_INTERNAL_SERVER: str = "Internal server error"
ERROR_TYPE_INTERNAL: str = "internal_error"

# Development server configuration
LOCALHOST_IP: str = "127.0.0.1"
DEFAULT_API_PORT: int = int(environ.get("API_PORT", "8000"))
ALLOWED_ORIGINS_DEFAULT: str = environ.get(
    "ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173"
)
SESSION_TOKEN_HEADER: str = "X-Session-Token"

# Logging Configuration
LOG_LEVEL: str = environ.get("LOG_LEVEL", "INFO")


class AppConstants:  # pylint: disable=too-few-public-methods
    """Attribute-style access to the module level constants."""

    def __getattr__(self, name: str):
        """Resolve constants from module globals."""
        value = globals().get(name)
        if value is None or name.startswith("_"):
            raise AttributeError(f"Unknown constant: {name}")
        return value


CONSTANTS = AppConstants()
