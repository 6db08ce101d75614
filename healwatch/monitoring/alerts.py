"""Alert rule evaluation with suppression, correlation and notification."""

import fnmatch
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from ..constants import CONSTANTS
from ..core.config import MonitoringSettings, settings as default_settings
from ..core.exceptions import (
    AlertNotFoundError,
    ChannelDeliveryError,
    InvalidAlertTransition,
    ValidationError,
)
from .arena import Arena
from .baseline import Severity
from .channels import NotificationChannel, build_channels
from .conditions import Condition, parse_condition
from .events import Subscription
from .store import ClassifiedObservation

logger = structlog.get_logger(__name__)


class AlertStatus(Enum):
    """Alert lifecycle states."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}

DEFAULT_CATEGORY_ACTIONS: dict[str, list[str]] = {
    "performance": ["check_system_load", "review_processes", "scale_horizontally"],
    "availability": ["check_service_status", "restart_service", "review_dependencies"],
    "capacity": ["free_disk_space", "expand_storage", "review_retention"],
    "security": ["review_access_logs", "rotate_credentials"],
}


@dataclass
class AlertRule:
    """Configuration for an alert rule."""

    id: str
    title: str
    condition: str
    severity: Severity = Severity.HIGH
    channels: list[str] = field(default_factory=lambda: ["log"])
    auto_remediation: bool = False
    description: str = ""
    resources: list[str] = field(default_factory=list)  # glob patterns, empty matches all
    categories: list[str] = field(default_factory=list)  # empty matches all
    cooldown: float | None = None  # seconds, falls back to settings
    max_alerts_per_hour: int | None = None
    remediation_issue_type: str | None = None
    enabled: bool = True
    parsed: Condition = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.id:
            raise ValidationError("Alert rule id cannot be empty", field="id")
        try:
            self.severity = Severity.parse(self.severity)
        except ValueError as e:
            raise ValidationError(str(e), field="severity") from e
        if self.cooldown is not None and self.cooldown < 0:
            raise ValidationError("Cooldown cannot be negative", field="cooldown")
        if self.max_alerts_per_hour is not None and self.max_alerts_per_hour < 1:
            raise ValidationError("max_alerts_per_hour must be at least 1", field="max_alerts_per_hour")
        self.parsed = parse_condition(self.condition)

    def matches_resource(self, resource_id: str) -> bool:
        return not self.resources or any(
            fnmatch.fnmatchcase(resource_id, pattern) for pattern in self.resources
        )

    def matches_category(self, category: str | None) -> bool:
        return not self.categories or category in self.categories

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "condition": self.condition,
            "severity": self.severity.value,
            "channels": list(self.channels),
            "auto_remediation": self.auto_remediation,
            "resources": list(self.resources),
            "categories": list(self.categories),
            "cooldown": self.cooldown,
            "max_alerts_per_hour": self.max_alerts_per_hour,
            "remediation_issue_type": self.remediation_issue_type,
            "enabled": self.enabled,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AlertRule":
        known = {name for name in cls.__dataclass_fields__ if name != "parsed"}
        try:
            return cls(**{key: value for key, value in data.items() if key in known})
        except TypeError as e:
            raise ValidationError("Invalid alert rule definition", cause=e) from e


@dataclass
class Alert:
    """A fired alert and its lifecycle."""

    id: int
    rule_id: str
    title: str
    resource_id: str
    metric_name: str
    value: float
    severity: Severity
    priority: int
    message: str
    created_ts: float
    category: str | None = None
    deviation: float | None = None
    correlated_alerts: list[int] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created_ts, UTC)

    @property
    def is_open(self) -> bool:
        return self.status is not AlertStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "title": self.title,
            "resource_id": self.resource_id,
            "metric_name": self.metric_name,
            "value": self.value,
            "severity": self.severity.value,
            "priority": self.priority,
            "message": self.message,
            "category": self.category,
            "deviation": self.deviation,
            "correlated_alerts": list(self.correlated_alerts),
            "suggested_actions": list(self.suggested_actions),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def default_rules() -> list[AlertRule]:
    return [
        AlertRule(
            id="high_cpu",
            title="High CPU Usage",
            description="CPU usage is above 80%",
            condition="cpu_usage > 80",
            severity=Severity.HIGH,
            channels=["log", "email", "slack"],
            auto_remediation=True,
        ),
    ]


RemediationHandler = Callable[[Alert, AlertRule], Awaitable[Any]]


class AlertRuleEngine:
    """Evaluates classified observations against alert rules."""

    def __init__(
        self,
        settings: MonitoringSettings | None = None,
        channels: Mapping[str, NotificationChannel] | None = None,
        rules: list[AlertRule] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the rule engine.

        Args:
            settings: Monitoring settings; defaults to the global settings
            channels: Notification channels by name; built from settings if omitted
            rules: Initial rules; the default rule set if omitted
            clock: Source of epoch-second timestamps
        """
        self.settings = settings or default_settings
        self.clock = clock
        self.channels: dict[str, NotificationChannel] = dict(
            channels if channels is not None else build_channels(self.settings.notifications)
        )
        self.rules: dict[str, AlertRule] = {}
        self.alerts: Arena[Alert] = Arena(self.settings.alert_capacity)

        self._open_ids: set[int] = set()
        self._latest_by_key: dict[tuple[str, str], int] = {}
        self._rule_alert_times: dict[str, deque[float]] = {}
        self._dependencies: dict[str, set[str]] = {}

        self.rule_actions: dict[str, list[str]] = {}
        self.category_actions: dict[str, list[str]] = {
            k: list(v) for k, v in DEFAULT_CATEGORY_ACTIONS.items()
        }

        self.remediation_handler: RemediationHandler | None = None
        self.alerts_triggered: Subscription[Alert] = Subscription("alerts_triggered")
        self.alerts_acknowledged: Subscription[Alert] = Subscription("alerts_acknowledged")
        self.alerts_resolved: Subscription[Alert] = Subscription("alerts_resolved")

        self.counters: dict[str, int] = {
            "evaluations": 0,
            "triggered": 0,
            "suppressed": 0,
            "notification_failures": 0,
            "remediations_requested": 0,
        }

        for rule in default_rules() if rules is None else rules:
            self.add_rule(rule)

        logger.info("Alert rule engine initialized", rules=len(self.rules), channels=list(self.channels))

    # Rule management

    def add_rule(self, rule: AlertRule) -> AlertRule:
        self.rules[rule.id] = rule
        logger.debug("Added alert rule", rule=rule.id, severity=rule.severity.value)
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        if rule_id in self.rules:
            del self.rules[rule_id]
            self._rule_alert_times.pop(rule_id, None)
            logger.debug("Removed alert rule", rule=rule_id)
            return True
        return False

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        logger.debug("Toggled alert rule", rule=rule_id, enabled=enabled)
        return True

    def register_channel(self, channel: NotificationChannel, name: str | None = None) -> None:
        self.channels[name or channel.name] = channel

    def register_dependency(self, resource_id: str, depends_on: str) -> None:
        """Record that ``resource_id`` depends on ``depends_on`` for correlation."""
        self._dependencies.setdefault(resource_id, set()).add(depends_on)

    def register_suggested_actions(
        self, actions: list[str], rule_id: str | None = None, category: str | None = None
    ) -> None:
        if rule_id is None and category is None:
            raise ValueError("Either rule_id or category is required")
        if rule_id is not None:
            self.rule_actions[rule_id] = list(actions)
        if category is not None:
            self.category_actions[category] = list(actions)

    # Evaluation

    async def evaluate(self, observation: ClassifiedObservation) -> list[Alert]:
        """Evaluate every applicable rule against an observation.

        Args:
            observation: Classified observation from the metric store

        Returns:
            Alerts created by this evaluation (suppressed matches excluded)
        """
        self.counters["evaluations"] += 1
        values = observation.fields()
        fired: list[Alert] = []

        for rule in list(self.rules.values()):
            if not self._is_applicable(rule, observation, values):
                continue
            if not rule.parsed.evaluate(values):
                continue

            now = self.clock()
            if self._is_suppressed(rule, observation.resource_id, now):
                self.counters["suppressed"] += 1
                logger.debug("Alert suppressed", rule=rule.id, resource=observation.resource_id)
                continue

            alert = self._create_alert(rule, observation, now)
            fired.append(alert)

            logger.warning(
                "Alert triggered",
                alert_id=alert.id,
                rule=rule.id,
                resource=alert.resource_id,
                metric=alert.metric_name,
                value=alert.value,
                priority=alert.priority,
                correlated=alert.correlated_alerts,
            )

            await self._send_notifications(alert, rule)
            await self.alerts_triggered.apublish(alert)
            await self._request_remediation(alert, rule)

        return fired

    def _is_applicable(
        self, rule: AlertRule, observation: ClassifiedObservation, values: Mapping[str, Any]
    ) -> bool:
        return (
            rule.enabled
            and rule.matches_resource(observation.resource_id)
            and rule.matches_category(observation.context.category)
            and rule.parsed.applies_to(values)
        )

    def _is_suppressed(self, rule: AlertRule, resource_id: str, now: float) -> bool:
        cooldown = rule.cooldown if rule.cooldown is not None else self.settings.alert_cooldown
        latest = self.alerts.get(self._latest_by_key.get((rule.id, resource_id), 0))
        if latest is not None and latest.is_open and now - latest.created_ts < cooldown:
            return True

        if rule.max_alerts_per_hour is not None:
            times = self._rule_alert_times.get(rule.id)
            if times:
                while times and times[0] <= now - 3600:
                    times.popleft()
                if len(times) >= rule.max_alerts_per_hour:
                    return True
        return False

    def _create_alert(self, rule: AlertRule, observation: ClassifiedObservation, now: float) -> Alert:
        correlated = self._find_correlated(observation.resource_id, now)
        message = (
            f"{rule.title}: {observation.metric_name} = {observation.value:g} "
            f"on {observation.resource_id}"
        )
        if observation.deviation is not None:
            message = f"{message} (deviation {observation.deviation:.2f}, {observation.severity.value})"

        alert = self.alerts.append(
            lambda key: Alert(
                id=key,
                rule_id=rule.id,
                title=rule.title,
                resource_id=observation.resource_id,
                metric_name=observation.metric_name,
                value=observation.value,
                severity=rule.severity,
                priority=observation.severity.weight,
                message=message,
                created_ts=now,
                category=observation.context.category,
                deviation=observation.deviation,
                correlated_alerts=correlated,
                suggested_actions=self.suggest_actions(rule.id, observation.context.category),
            )
        )
        self._open_ids = {key for key in self._open_ids if key in self.alerts}
        self._open_ids.add(alert.id)
        self._latest_by_key[(rule.id, observation.resource_id)] = alert.id
        if rule.max_alerts_per_hour is not None:
            self._rule_alert_times.setdefault(rule.id, deque()).append(now)
        self.counters["triggered"] += 1
        return alert

    def _find_correlated(self, resource_id: str, now: float) -> list[int]:
        related = self._related_resources(resource_id)
        window = self.settings.correlation_window
        correlated = []
        for key in sorted(self._open_ids):
            alert = self.alerts.get(key)
            if alert is None or alert.status is not AlertStatus.ACTIVE:
                continue
            if alert.resource_id in related or now - alert.created_ts <= window:
                correlated.append(alert.id)
        return correlated

    def _related_resources(self, resource_id: str) -> set[str]:
        """Resources linked to ``resource_id`` through a registered dependency."""
        own = self._dependencies.get(resource_id, set())
        related = set(own)
        for other, deps in self._dependencies.items():
            if resource_id in deps or own & deps:
                related.add(other)
        related.discard(resource_id)
        return related

    def suggest_actions(self, rule_id: str, category: str | None = None) -> list[str]:
        """Suggested actions by rule, then by category, then the defaults."""
        if rule_id in self.rule_actions:
            return list(self.rule_actions[rule_id])
        if category is not None and category in self.category_actions:
            return list(self.category_actions[category])
        return list(CONSTANTS.DEFAULT_SUGGESTED_ACTIONS)

    async def _send_notifications(self, alert: Alert, rule: AlertRule) -> None:
        """Send alert notifications through the rule's channels."""
        for name in rule.channels:
            channel = self.channels.get(name)
            if channel is None:
                logger.debug("Notification channel not configured", channel=name, rule=rule.id)
                continue
            try:
                await channel.send(alert)
            except ChannelDeliveryError as e:
                self.counters["notification_failures"] += 1
                logger.error("Failed to send alert notification", channel=name, rule=rule.id, error=str(e))
            except Exception as e:
                self.counters["notification_failures"] += 1
                error = ChannelDeliveryError("Unexpected channel failure", name, cause=e)
                logger.error("Failed to send alert notification", channel=name, rule=rule.id, error=str(error))

    async def _request_remediation(self, alert: Alert, rule: AlertRule) -> None:
        if not (rule.auto_remediation and self.settings.automated_remediation_enabled):
            return
        if self.remediation_handler is None:
            logger.debug("No remediation handler registered", alert_id=alert.id)
            return

        self.counters["remediations_requested"] += 1
        try:
            await self.remediation_handler(alert, rule)
        except Exception as e:
            logger.error("Automated remediation failed", alert_id=alert.id, rule=rule.id, error=str(e))

    # Lifecycle

    def get_alert(self, alert_id: int) -> Alert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def acknowledge(self, alert_id: int, operator: str | None = None) -> Alert:
        """Mark an active alert as acknowledged.

        Raises:
            AlertNotFoundError: If the id is unknown
            InvalidAlertTransition: If the alert is not active
        """
        alert = self._transition(alert_id, AlertStatus.ACKNOWLEDGED)
        alert.acknowledged_at = datetime.fromtimestamp(self.clock(), UTC)
        alert.acknowledged_by = operator
        logger.info("Alert acknowledged", alert_id=alert_id, operator=operator)
        self.alerts_acknowledged.publish(alert)
        return alert

    def resolve(self, alert_id: int) -> Alert:
        """Resolve an active or acknowledged alert.

        Raises:
            AlertNotFoundError: If the id is unknown
            InvalidAlertTransition: If the alert is already resolved
        """
        alert = self._transition(alert_id, AlertStatus.RESOLVED)
        alert.resolved_at = datetime.fromtimestamp(self.clock(), UTC)
        self._open_ids.discard(alert_id)
        logger.info("Alert resolved", alert_id=alert_id, rule=alert.rule_id)
        self.alerts_resolved.publish(alert)
        return alert

    def _transition(self, alert_id: int, target: AlertStatus) -> Alert:
        alert = self.get_alert(alert_id)
        if target not in _TRANSITIONS[alert.status]:
            raise InvalidAlertTransition(alert_id, alert.status.value, target.value)
        alert.status = target
        return alert

    # Queries

    def list_alerts(
        self,
        status: AlertStatus | None = None,
        resource_id: str | None = None,
        limit: int | None = None,
    ) -> list[Alert]:
        """Alerts newest first, optionally filtered."""
        alerts = [
            alert
            for alert in reversed(self.alerts.values())
            if (status is None or alert.status is status)
            and (resource_id is None or alert.resource_id == resource_id)
        ]
        return alerts[:limit] if limit is not None else alerts

    def active_alerts(self) -> list[Alert]:
        return [a for a in (self.alerts.get(k) for k in sorted(self._open_ids)) if a and a.is_open]

    def get_alert_summary(self) -> dict[str, Any]:
        """Get summary of current alert state."""
        now = self.clock()
        by_status = {status.value: 0 for status in AlertStatus}
        by_priority: dict[int, int] = {}
        for alert in self.alerts:
            by_status[alert.status.value] += 1
            if alert.is_open:
                by_priority[alert.priority] = by_priority.get(alert.priority, 0) + 1

        return {
            "timestamp": datetime.fromtimestamp(now, UTC).isoformat(),
            "total_rules": len(self.rules),
            "enabled_rules": sum(1 for r in self.rules.values() if r.enabled),
            "alerts_by_status": by_status,
            "open_by_priority": by_priority,
            "alerts_last_24h": sum(1 for a in self.alerts if a.created_ts > now - 86400),
            "evicted": self.alerts.evicted,
            **self.counters,
        }
