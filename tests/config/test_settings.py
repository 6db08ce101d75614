"""Tests for monitoring settings resolution and validation."""

import pytest

from healwatch.core.config import MonitoringSettings, NotificationSettings, SeverityThresholds
from healwatch.core.exceptions import ConfigurationError


class TestDefaults:
    """Test the documented defaults."""

    def test_defaults(self):
        settings = MonitoringSettings()

        assert settings.severity_thresholds == SeverityThresholds(medium=0.1, high=0.3, critical=0.5)
        assert settings.alert_min_severity == "high"
        assert settings.forecast_model == "linear"
        assert settings.forecast_min_samples == 10
        assert dict(settings.forecast_thresholds) == {
            "cpu_usage": 90.0,
            "memory_usage": 90.0,
            "disk_usage": 95.0,
        }
        assert settings.self_healing_enabled is False

    def test_enabled_features(self):
        settings = MonitoringSettings(
            system_collection_enabled=False,
            self_healing_enabled=True,
            automated_remediation_enabled=True,
        )
        assert settings.enabled_features == ["self-healing", "automated-remediation"]

    def test_immutable(self):
        settings = MonitoringSettings()
        with pytest.raises(AttributeError):
            settings.collection_interval = 1


class TestValidation:
    """Test rejection of inconsistent settings."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"collection_interval": 0},
            {"forecast_window": -1},
            {"alert_cooldown": -5},
            {"alert_min_severity": "low"},
            {"baseline_min_samples": 0},
            {"forecast_min_samples": 1},
            {"deviation_epsilon": 0},
            {"trend_window": 1},
            {"alert_capacity": 0},
            {"remediation_timeout": 0},
            {"automated_remediation_enabled": True},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ConfigurationError):
            MonitoringSettings(**overrides)

    def test_threshold_order(self):
        with pytest.raises(ConfigurationError):
            SeverityThresholds(medium=0.4, high=0.3)

    def test_notification_checks(self):
        with pytest.raises(ConfigurationError):
            NotificationSettings(webhook_timeout=0)


class TestRedaction:
    """Test secret masking."""

    def test_secrets_masked(self):
        settings = MonitoringSettings(
            notifications=NotificationSettings(
                smtp_password="hunter2",
                slack_webhook_url="https://hooks.slack.test/T000",
                to_emails=("oncall@example.com",),
            )
        )

        notifications = settings.redacted()["notifications"]

        assert notifications["smtp_password"] == "***"
        assert notifications["slack_webhook_url"] == "***"
        assert notifications["webhook_url"] is None
        assert notifications["to_emails"] == ["oncall@example.com"]

    def test_original_untouched(self):
        settings = MonitoringSettings(notifications=NotificationSettings(smtp_password="hunter2"))
        settings.redacted()
        assert settings.notifications.smtp_password == "hunter2"


class TestFromEnv:
    """Test resolution from HEALWATCH_* variables."""

    def test_empty_environment_gives_defaults(self):
        assert MonitoringSettings.from_env({}) == MonitoringSettings()

    def test_values_parsed(self):
        settings = MonitoringSettings.from_env(
            {
                "HEALWATCH_COLLECTION_INTERVAL": "5",
                "HEALWATCH_SELF_HEALING": "yes",
                "HEALWATCH_AUTOMATED_REMEDIATION": "on",
                "HEALWATCH_SYSTEM_COLLECTION": "false",
                "HEALWATCH_SEVERITY_CRITICAL": "0.9",
                "HEALWATCH_ALERT_EMAILS": "a@example.com, b@example.com,",
                "HEALWATCH_SMTP_PORT": "2525",
                "HEALWATCH_ALERT_MIN_SEVERITY": "medium",
            }
        )

        assert settings.collection_interval == 5.0
        assert settings.self_healing_enabled is True
        assert settings.automated_remediation_enabled is True
        assert settings.system_collection_enabled is False
        assert settings.severity_thresholds.critical == 0.9
        assert settings.notifications.to_emails == ("a@example.com", "b@example.com")
        assert settings.notifications.smtp_port == 2525
        assert settings.alert_min_severity == "medium"

    def test_blank_value_uses_default(self):
        settings = MonitoringSettings.from_env({"HEALWATCH_COLLECTION_INTERVAL": ""})
        assert settings.collection_interval == MonitoringSettings().collection_interval

    @pytest.mark.parametrize(
        "name,value",
        [
            ("HEALWATCH_COLLECTION_INTERVAL", "often"),
            ("HEALWATCH_SELF_HEALING", "maybe"),
            ("HEALWATCH_SMTP_PORT", "25.5"),
        ],
    )
    def test_unparseable(self, name, value):
        with pytest.raises(ConfigurationError):
            MonitoringSettings.from_env({name: value})


class TestFromMapping:
    """Test building settings from nested mappings."""

    def test_nested_sections(self):
        settings = MonitoringSettings.from_mapping(
            {
                "severity_thresholds": {"medium": 0.2, "high": 0.4, "critical": 0.6},
                "notifications": {"email_enabled": True, "to_emails": ["ops@example.com"]},
                "forecast_thresholds": {"cpu_usage": "85"},
            }
        )

        assert settings.severity_thresholds.high == 0.4
        assert settings.notifications.to_emails == ("ops@example.com",)
        assert settings.forecast_thresholds == {"cpu_usage": 85.0}

    def test_bad_nested_key(self):
        with pytest.raises(ConfigurationError):
            MonitoringSettings.from_mapping({"notifications": {"pager": "on"}})
