"""Tests for alert notification channels."""

import smtplib
from io import StringIO
from unittest.mock import patch

import aiohttp
import pytest
from aioresponses import aioresponses
from rich.console import Console

from healwatch.core.config import NotificationSettings
from healwatch.core.exceptions import ChannelDeliveryError
from healwatch.monitoring.alerts import Alert
from healwatch.monitoring.baseline import Severity
from healwatch.monitoring.channels import (
    ConsoleChannel,
    EmailChannel,
    LogChannel,
    SlackChannel,
    WebhookChannel,
    build_channels,
)

WEBHOOK_URL = "https://hooks.example.com/alerts"


@pytest.fixture
def alert():
    return Alert(
        id=7,
        rule_id="high_cpu",
        title="High CPU Usage",
        resource_id="web-1",
        metric_name="cpu_usage",
        value=95.0,
        severity=Severity.HIGH,
        priority=4,
        message="High CPU Usage: cpu_usage = 95 on web-1",
        created_ts=1_700_000_000.0,
        suggested_actions=["check_system_load"],
    )


@pytest.fixture
def email_settings():
    return NotificationSettings(
        email_enabled=True,
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_username="alerts",
        smtp_password="secret",
        to_emails=("ops@example.com", "sre@example.com"),
    )


class TestLogAndConsole:
    """Test local channels."""

    @pytest.mark.asyncio
    async def test_log_channel(self, alert):
        await LogChannel().send(alert)

    @pytest.mark.asyncio
    async def test_console_channel(self, alert):
        output = StringIO()
        channel = ConsoleChannel(Console(file=output, force_terminal=False, width=120))

        await channel.send(alert)

        text = output.getvalue()
        assert "ALERT [HIGH]" in text
        assert "Resource: web-1" in text
        assert "Priority: 4" in text


class TestEmailChannel:
    """Test SMTP delivery."""

    def test_build_message(self, alert, email_settings):
        msg = EmailChannel(email_settings).build_message(alert)

        assert msg["Subject"] == "[HIGH] High CPU Usage on web-1"
        assert msg["To"] == "ops@example.com, sre@example.com"
        body = msg.get_payload()[0].get_payload()
        assert "Suggested actions: check_system_load" in body

    @pytest.mark.asyncio
    async def test_send(self, alert, email_settings):
        with patch("healwatch.monitoring.channels.smtplib.SMTP") as mock_smtp:
            await EmailChannel(email_settings).send(alert)

        mock_smtp.assert_called_once_with("smtp.example.com", 587)
        server = mock_smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("alerts", "secret")
        server.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_smtp_failure(self, alert, email_settings):
        with patch("healwatch.monitoring.channels.smtplib.SMTP") as mock_smtp:
            mock_smtp.side_effect = smtplib.SMTPConnectError(421, b"unavailable")
            with pytest.raises(ChannelDeliveryError) as exc_info:
                await EmailChannel(email_settings).send(alert)

        assert exc_info.value.channel == "email"

    @pytest.mark.asyncio
    async def test_unconfigured_skips(self, alert):
        with patch("healwatch.monitoring.channels.smtplib.SMTP") as mock_smtp:
            await EmailChannel(NotificationSettings(email_enabled=True)).send(alert)
        mock_smtp.assert_not_called()


class TestWebhookChannel:
    """Test HTTP delivery."""

    @pytest.mark.asyncio
    async def test_posts_alert_payload(self, alert):
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=200)
            await WebhookChannel(WEBHOOK_URL).send(alert)

            call = next(iter(mocked.requests.values()))[0]
        assert call.kwargs["json"]["alert"]["id"] == 7
        assert call.kwargs["json"]["alert"]["resource_id"] == "web-1"

    @pytest.mark.asyncio
    async def test_http_error(self, alert):
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=500)
            with pytest.raises(ChannelDeliveryError, match="HTTP 500"):
                await WebhookChannel(WEBHOOK_URL).send(alert)

    @pytest.mark.asyncio
    async def test_connection_error(self, alert):
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, exception=aiohttp.ClientConnectionError("refused"))
            with pytest.raises(ChannelDeliveryError) as exc_info:
                await WebhookChannel(WEBHOOK_URL).send(alert)

        assert isinstance(exc_info.value.cause, aiohttp.ClientConnectionError)

    @pytest.mark.asyncio
    async def test_slack_payload(self, alert):
        with aioresponses() as mocked:
            mocked.post(WEBHOOK_URL, status=200)
            await SlackChannel(WEBHOOK_URL).send(alert)

            payload = next(iter(mocked.requests.values()))[0].kwargs["json"]
        assert "High CPU Usage" in payload["text"]
        attachment = payload["attachments"][0]
        assert attachment["color"] == "#ff8c00"
        assert {"title": "Value", "value": "95", "short": True} in attachment["fields"]
        assert attachment["ts"] == 1_700_000_000


class TestBuildChannels:
    """Test channel construction from settings."""

    def test_defaults(self):
        channels = build_channels(NotificationSettings())
        assert set(channels) == {"log", "console"}

    def test_all_configured(self):
        settings = NotificationSettings(
            email_enabled=True,
            webhook_url=WEBHOOK_URL,
            slack_webhook_url="https://hooks.slack.com/services/T/B/X",
            webhook_timeout=3.0,
        )
        channels = build_channels(settings)

        assert set(channels) == {"log", "console", "email", "webhook", "slack"}
        assert isinstance(channels["slack"], SlackChannel)
        assert channels["webhook"].timeout == 3.0
