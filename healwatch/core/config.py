"""Immutable runtime settings for the monitoring engine.

Settings are resolved once at startup (from defaults, environment variables
or a config file) and validated in ``__post_init__``. Components receive the
resolved object and read typed attributes; nothing re-evaluates feature gates
per call.
"""

import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from ..constants import CONSTANTS
from .exceptions import ConfigurationError

SEVERITY_ORDER: tuple[str, ...] = ("normal", "medium", "high", "critical")


@dataclass(frozen=True)
class SeverityThresholds:
    """Deviation cut-offs for the severity tiers (strictly greater than)."""

    medium: float = CONSTANTS.DEFAULT_SEVERITY_MEDIUM
    high: float = CONSTANTS.DEFAULT_SEVERITY_HIGH
    critical: float = CONSTANTS.DEFAULT_SEVERITY_CRITICAL

    def __post_init__(self):
        if not 0 <= self.medium <= self.high <= self.critical:
            raise ConfigurationError(
                "Severity thresholds must satisfy 0 <= medium <= high <= critical"
            )


@dataclass(frozen=True)
class NotificationSettings:
    """Endpoints for alert notification channels."""

    email_enabled: bool = False
    smtp_host: str = CONSTANTS.DEFAULT_SMTP_HOST
    smtp_port: int = CONSTANTS.DEFAULT_SMTP_PORT
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    from_email: str = CONSTANTS.DEFAULT_FROM_EMAIL
    to_emails: tuple[str, ...] = ()

    webhook_url: str | None = None
    webhook_timeout: float = CONSTANTS.DEFAULT_WEBHOOK_TIMEOUT
    slack_webhook_url: str | None = None

    def __post_init__(self):
        if self.webhook_timeout <= 0:
            raise ConfigurationError("webhook_timeout must be positive")
        if not 0 < self.smtp_port < 65536:
            raise ConfigurationError("smtp_port must be a valid port number")


@dataclass(frozen=True)
class MonitoringSettings:
    """Configuration for the whole monitoring pipeline."""

    # Scheduling
    collection_interval: float = CONSTANTS.DEFAULT_COLLECTION_INTERVAL
    forecast_interval: float = CONSTANTS.DEFAULT_FORECAST_INTERVAL
    forecast_window: float = CONSTANTS.DEFAULT_FORECAST_WINDOW

    # Feature flags
    system_collection_enabled: bool = True
    predictive_monitoring_enabled: bool = False
    self_healing_enabled: bool = False
    automated_remediation_enabled: bool = False

    # Baseline and classification
    severity_thresholds: SeverityThresholds = field(default_factory=SeverityThresholds)
    baseline_min_samples: int = CONSTANTS.DEFAULT_BASELINE_MIN_SAMPLES
    deviation_epsilon: float = CONSTANTS.DEFAULT_DEVIATION_EPSILON
    trend_window: int = CONSTANTS.DEFAULT_TREND_WINDOW
    trend_tolerance: float = CONSTANTS.DEFAULT_TREND_TOLERANCE
    history_capacity: int = CONSTANTS.DEFAULT_HISTORY_CAPACITY

    # Alerting
    alert_cooldown: float = CONSTANTS.DEFAULT_ALERT_COOLDOWN
    alert_min_severity: str = CONSTANTS.DEFAULT_ALERT_MIN_SEVERITY
    correlation_window: float = CONSTANTS.DEFAULT_CORRELATION_WINDOW
    alert_capacity: int = CONSTANTS.DEFAULT_ALERT_CAPACITY

    # Forecasting
    forecast_model: str = CONSTANTS.DEFAULT_FORECAST_MODEL
    forecast_min_samples: int = CONSTANTS.DEFAULT_FORECAST_MIN_SAMPLES
    forecast_max_steps: int = CONSTANTS.DEFAULT_FORECAST_MAX_STEPS
    forecast_thresholds: Mapping[str, float] = field(
        default_factory=lambda: dict(CONSTANTS.DEFAULT_FORECAST_THRESHOLDS)
    )
    prediction_capacity: int = CONSTANTS.DEFAULT_PREDICTION_CAPACITY

    # Self-healing
    remediation_timeout: float = CONSTANTS.DEFAULT_REMEDIATION_TIMEOUT

    # Exposition
    exposition_timestamps: bool = True

    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    def __post_init__(self):
        """Validate configuration parameters."""
        for name in ("collection_interval", "forecast_interval", "forecast_window"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.alert_cooldown < 0 or self.correlation_window < 0:
            raise ConfigurationError("alert_cooldown and correlation_window cannot be negative")
        if self.alert_min_severity not in SEVERITY_ORDER:
            raise ConfigurationError(
                f"alert_min_severity must be one of {', '.join(SEVERITY_ORDER)}"
            )
        if self.baseline_min_samples < 1:
            raise ConfigurationError("baseline_min_samples must be at least 1")
        if self.forecast_min_samples < 2:
            raise ConfigurationError("forecast_min_samples must be at least 2")
        if self.deviation_epsilon <= 0:
            raise ConfigurationError("deviation_epsilon must be positive")
        if self.trend_window < 2:
            raise ConfigurationError("trend_window must be at least 2")
        for name in ("history_capacity", "alert_capacity", "prediction_capacity"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.remediation_timeout <= 0:
            raise ConfigurationError("remediation_timeout must be positive")
        if self.automated_remediation_enabled and not self.self_healing_enabled:
            raise ConfigurationError(
                "automated_remediation_enabled requires self_healing_enabled"
            )

    @property
    def enabled_features(self) -> list[str]:
        """Names of the optional subsystems switched on."""
        flags = {
            "system-collection": self.system_collection_enabled,
            "predictive-monitoring": self.predictive_monitoring_enabled,
            "self-healing": self.self_healing_enabled,
            "automated-remediation": self.automated_remediation_enabled,
        }
        return [name for name, enabled in flags.items() if enabled]

    def redacted(self) -> dict[str, Any]:
        """Settings as a plain dictionary with secrets masked."""
        data = asdict(self)
        data["forecast_thresholds"] = dict(self.forecast_thresholds)
        notifications = data["notifications"]
        for secret in ("smtp_password", "webhook_url", "slack_webhook_url"):
            if notifications.get(secret):
                notifications[secret] = CONSTANTS.REDACTED_VALUE
        notifications["to_emails"] = list(notifications["to_emails"])
        return data

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "MonitoringSettings":
        """Build settings from a nested mapping, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__)
        kwargs = {key: value for key, value in values.items() if key in known}

        try:
            thresholds = kwargs.get("severity_thresholds")
            if isinstance(thresholds, Mapping):
                kwargs["severity_thresholds"] = SeverityThresholds(**thresholds)

            notifications = kwargs.get("notifications")
            if isinstance(notifications, Mapping):
                notifications = dict(notifications)
                if "to_emails" in notifications:
                    notifications["to_emails"] = tuple(notifications["to_emails"])
                kwargs["notifications"] = NotificationSettings(**notifications)

            if "forecast_thresholds" in kwargs:
                kwargs["forecast_thresholds"] = {
                    str(k): float(v) for k, v in dict(kwargs["forecast_thresholds"]).items()
                }

            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError("Invalid monitoring settings", cause=e) from e

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MonitoringSettings":
        """Build settings from ``HEALWATCH_*`` environment variables.

        Absent variables fall back to the documented defaults.
        """
        env = os.environ if environ is None else environ
        prefix = CONSTANTS.ENV_PREFIX

        def get(name: str, cast, default):
            raw = env.get(f"{prefix}{name}")
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {prefix}{name}: {raw!r}") from e

        defaults = cls()
        thresholds = SeverityThresholds(
            medium=get("SEVERITY_MEDIUM", float, defaults.severity_thresholds.medium),
            high=get("SEVERITY_HIGH", float, defaults.severity_thresholds.high),
            critical=get("SEVERITY_CRITICAL", float, defaults.severity_thresholds.critical),
        )
        notifications = NotificationSettings(
            email_enabled=get("EMAIL_ENABLED", _parse_bool, False),
            smtp_host=get("SMTP_HOST", str, CONSTANTS.DEFAULT_SMTP_HOST),
            smtp_port=get("SMTP_PORT", int, CONSTANTS.DEFAULT_SMTP_PORT),
            smtp_username=get("SMTP_USERNAME", str, None),
            smtp_password=get("SMTP_PASSWORD", str, None),
            from_email=get("FROM_EMAIL", str, CONSTANTS.DEFAULT_FROM_EMAIL),
            to_emails=get("ALERT_EMAILS", _parse_list, ()),
            webhook_url=get("WEBHOOK_URL", str, None),
            webhook_timeout=get("WEBHOOK_TIMEOUT", float, CONSTANTS.DEFAULT_WEBHOOK_TIMEOUT),
            slack_webhook_url=get("SLACK_WEBHOOK_URL", str, None),
        )
        return cls(
            collection_interval=get("COLLECTION_INTERVAL", float, defaults.collection_interval),
            forecast_interval=get("FORECAST_INTERVAL", float, defaults.forecast_interval),
            forecast_window=get("FORECAST_WINDOW", float, defaults.forecast_window),
            system_collection_enabled=get(
                "SYSTEM_COLLECTION", _parse_bool, defaults.system_collection_enabled
            ),
            predictive_monitoring_enabled=get(
                "PREDICTIVE_MONITORING", _parse_bool, defaults.predictive_monitoring_enabled
            ),
            self_healing_enabled=get("SELF_HEALING", _parse_bool, defaults.self_healing_enabled),
            automated_remediation_enabled=get(
                "AUTOMATED_REMEDIATION", _parse_bool, defaults.automated_remediation_enabled
            ),
            severity_thresholds=thresholds,
            alert_cooldown=get("ALERT_COOLDOWN", float, defaults.alert_cooldown),
            alert_min_severity=get("ALERT_MIN_SEVERITY", str, defaults.alert_min_severity),
            correlation_window=get("CORRELATION_WINDOW", float, defaults.correlation_window),
            forecast_model=get("FORECAST_MODEL", str, defaults.forecast_model),
            forecast_min_samples=get(
                "FORECAST_MIN_SAMPLES", int, defaults.forecast_min_samples
            ),
            history_capacity=get("HISTORY_CAPACITY", int, defaults.history_capacity),
            remediation_timeout=get(
                "REMEDIATION_TIMEOUT", float, defaults.remediation_timeout
            ),
            notifications=notifications,
        )


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def _parse_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# Global settings instance
settings = MonitoringSettings.from_env()
