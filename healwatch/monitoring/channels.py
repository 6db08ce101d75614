"""Alert notification channels."""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from rich.console import Console

from ..core.config import NotificationSettings
from ..core.exceptions import ChannelDeliveryError

if TYPE_CHECKING:
    from .alerts import Alert

logger = structlog.get_logger(__name__)

_SEVERITY_COLORS = {
    "critical": "red",
    "high": "orange3",
    "medium": "yellow",
    "normal": "green",
}
_SLACK_COLORS = {
    "critical": "#d00000",
    "high": "#ff8c00",
    "medium": "#ffd700",
    "normal": "#2eb886",
}


class NotificationChannel:
    """Base class for alert delivery targets.

    ``send`` raises :class:`ChannelDeliveryError` when delivery fails; the
    alert engine logs it and carries on.
    """

    name = "channel"

    async def send(self, alert: "Alert") -> None:
        raise NotImplementedError


class LogChannel(NotificationChannel):
    """Send alerts via structured logging."""

    name = "log"

    async def send(self, alert: "Alert") -> None:
        logger.bind(
            alert_id=alert.id,
            alert_rule=alert.rule_id,
            alert_severity=alert.severity.value,
            resource=alert.resource_id,
            metric_name=alert.metric_name,
            metric_value=alert.value,
            priority=alert.priority,
        ).warning(f"ALERT: {alert.message}")


class ConsoleChannel(NotificationChannel):
    """Print alerts to the terminal."""

    name = "console"

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    async def send(self, alert: "Alert") -> None:
        color = _SEVERITY_COLORS.get(alert.severity.value, "white")
        self.console.print(
            f"\n[bold {color}]ALERT [{alert.severity.value.upper()}][/bold {color}]: {alert.message}"
        )
        self.console.print(f"   Rule: {alert.rule_id}")
        self.console.print(f"   Resource: {alert.resource_id}")
        self.console.print(f"   Metric: {alert.metric_name} = {alert.value}")
        self.console.print(f"   Priority: {alert.priority}")
        self.console.print(f"   Time: {alert.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}\n")


class EmailChannel(NotificationChannel):
    """Send alerts over SMTP from a worker thread."""

    name = "email"

    def __init__(self, settings: NotificationSettings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return self.settings.email_enabled and bool(self.settings.to_emails)

    def build_message(self, alert: "Alert") -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.settings.from_email
        msg["To"] = ", ".join(self.settings.to_emails)
        msg["Subject"] = f"[{alert.severity.value.upper()}] {alert.title} on {alert.resource_id}"

        body = f"""
Alert: {alert.title} ({alert.rule_id})
Severity: {alert.severity.value.upper()}
Priority: {alert.priority}
Message: {alert.message}
Resource: {alert.resource_id}
Metric: {alert.metric_name}
Value: {alert.value}
Suggested actions: {", ".join(alert.suggested_actions)}
Time: {alert.created_at.isoformat()}
"""
        msg.attach(MIMEText(body, "plain"))
        return msg

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_username and self.settings.smtp_password:
                server.login(self.settings.smtp_username, self.settings.smtp_password)
            server.send_message(msg)

    async def send(self, alert: "Alert") -> None:
        if not self.configured:
            logger.debug("Email channel not configured, skipping", alert_id=alert.id)
            return

        try:
            await asyncio.to_thread(self._deliver, self.build_message(alert))
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryError("Failed to send email notification", self.name, cause=e) from e

        logger.debug("Email notification sent", alert_id=alert.id)


class WebhookChannel(NotificationChannel):
    """POST alerts as JSON to an HTTP endpoint."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def build_payload(self, alert: "Alert") -> dict[str, Any]:
        return {"alert": alert.to_dict()}

    async def send(self, alert: "Alert") -> None:
        try:
            async with (
                aiohttp.ClientSession() as session,
                session.post(
                    self.url,
                    json=self.build_payload(alert),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response,
            ):
                if response.status >= 400:
                    raise ChannelDeliveryError(
                        f"Webhook returned HTTP {response.status}", self.name
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelDeliveryError("Webhook request failed", self.name, cause=e) from e

        logger.debug("Webhook notification sent", channel=self.name, alert_id=alert.id)


class SlackChannel(WebhookChannel):
    """Post alerts to a Slack incoming webhook."""

    name = "slack"

    def build_payload(self, alert: "Alert") -> dict[str, Any]:
        return {
            "text": f":rotating_light: *{alert.title}* on `{alert.resource_id}`",
            "attachments": [
                {
                    "color": _SLACK_COLORS.get(alert.severity.value, "#cccccc"),
                    "text": alert.message,
                    "fields": [
                        {"title": "Severity", "value": alert.severity.value, "short": True},
                        {"title": "Priority", "value": str(alert.priority), "short": True},
                        {"title": "Metric", "value": alert.metric_name, "short": True},
                        {"title": "Value", "value": f"{alert.value:g}", "short": True},
                    ],
                    "ts": int(alert.created_at.timestamp()),
                }
            ],
        }


def build_channels(settings: NotificationSettings) -> dict[str, NotificationChannel]:
    """Create the channels the notification settings enable.

    ``log`` and ``console`` are always available; email, webhook and Slack
    only when configured.
    """
    channels: dict[str, NotificationChannel] = {
        "log": LogChannel(),
        "console": ConsoleChannel(),
    }
    if settings.email_enabled:
        channels["email"] = EmailChannel(settings)
    if settings.webhook_url:
        channels["webhook"] = WebhookChannel(settings.webhook_url, settings.webhook_timeout)
    if settings.slack_webhook_url:
        channels["slack"] = SlackChannel(settings.slack_webhook_url, settings.webhook_timeout)
    return channels
