"""Tests for alert rule evaluation and the alert lifecycle."""

from unittest.mock import AsyncMock

import pytest
from conftest import FailingChannel, RecordingChannel, make_observation

from healwatch.core.config import MonitoringSettings
from healwatch.core.exceptions import AlertNotFoundError, InvalidAlertTransition, ValidationError
from healwatch.monitoring.alerts import AlertRule, AlertRuleEngine, AlertStatus, default_rules
from healwatch.monitoring.baseline import Severity
from healwatch.monitoring.store import MetricData, MetricStore


def severity_rule(**overrides) -> AlertRule:
    values = {
        "id": "anomaly",
        "title": "Anomalous value",
        "condition": "severity in {high, critical}",
        "severity": Severity.HIGH,
        "channels": ["log"],
    }
    values.update(overrides)
    return AlertRule(**values)


class TestAlertRule:
    """Test alert rule configuration."""

    def test_default_rule(self):
        rules = default_rules()
        assert len(rules) == 1
        rule = rules[0]
        assert rule.id == "high_cpu"
        assert rule.condition == "cpu_usage > 80"
        assert rule.severity is Severity.HIGH
        assert rule.channels == ["log", "email", "slack"]
        assert rule.auto_remediation is True
        assert rule.remediation_issue_type is None

    def test_severity_parsed_from_string(self):
        rule = AlertRule(id="r", title="R", condition="cpu_usage > 1", severity="critical")
        assert rule.severity is Severity.CRITICAL

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"id": ""}, "id"),
            ({"severity": "urgent"}, "severity"),
            ({"cooldown": -1}, "cooldown"),
            ({"max_alerts_per_hour": 0}, "max_alerts_per_hour"),
            ({"condition": "cpu_usage >"}, "condition"),
        ],
    )
    def test_invalid_rule(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            severity_rule(**overrides)
        assert exc_info.value.field == field

    def test_from_mapping_ignores_unknown_keys(self):
        rule = AlertRule.from_mapping(
            {"id": "disk", "title": "Disk", "condition": "disk_usage > 90", "owner": "ops"}
        )
        assert rule.id == "disk"
        assert rule.to_dict()["condition"] == "disk_usage > 90"

    def test_from_mapping_missing_fields(self):
        with pytest.raises(ValidationError):
            AlertRule.from_mapping({"id": "disk"})

    def test_resource_globs(self):
        rule = severity_rule(resources=["web-*"])
        assert rule.matches_resource("web-1")
        assert not rule.matches_resource("db-1")


class TestEvaluate:
    """Test rule evaluation against observations."""

    @pytest.mark.asyncio
    async def test_critical_deviation_fires_once(self, settings, clock, recording_channel):
        """95 against a 40 +/- 5 baseline fires the default CPU rule once at priority 4."""
        store = MetricStore(settings, clock=clock)
        engine = AlertRuleEngine(settings, channels={"log": recording_channel}, clock=clock)
        store.seed_baseline("web-1", "cpu_usage", mean=40, stddev=5)

        observation = store.observe("web-1", MetricData("cpu_usage", 95.0))
        alerts = await engine.evaluate(observation)

        assert observation.severity is Severity.CRITICAL
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.id == 1
        assert alert.rule_id == "high_cpu"
        assert alert.severity is Severity.HIGH
        assert alert.priority == 4
        assert alert.status is AlertStatus.ACTIVE
        assert recording_channel.sent == [alert]

    @pytest.mark.asyncio
    async def test_non_matching_observation(self, engine):
        alerts = await engine.evaluate(make_observation(value=50.0, severity=Severity.NORMAL))
        assert alerts == []
        assert engine.counters["evaluations"] == 1

    @pytest.mark.asyncio
    async def test_rule_not_applicable_to_other_metrics(self, engine):
        alerts = await engine.evaluate(make_observation(metric_name="memory_usage"))
        assert alerts == []

    @pytest.mark.asyncio
    async def test_priority_follows_observation_severity(self, engine):
        alerts = await engine.evaluate(make_observation(severity=Severity.MEDIUM))
        assert alerts[0].priority == 2

    @pytest.mark.asyncio
    async def test_disabled_rule(self, engine):
        engine.set_rule_enabled("high_cpu", False)
        assert await engine.evaluate(make_observation()) == []
        assert engine.set_rule_enabled("missing", True) is False

    @pytest.mark.asyncio
    async def test_resource_filter(self, settings, clock):
        engine = AlertRuleEngine(
            settings, channels={}, rules=[severity_rule(resources=["db-*"])], clock=clock
        )
        assert await engine.evaluate(make_observation(resource_id="web-1")) == []
        assert len(await engine.evaluate(make_observation(resource_id="db-1"))) == 1

    @pytest.mark.asyncio
    async def test_category_filter(self, settings, clock):
        engine = AlertRuleEngine(
            settings, channels={}, rules=[severity_rule(categories=["performance"])], clock=clock
        )
        assert await engine.evaluate(make_observation(category="capacity")) == []
        assert len(await engine.evaluate(make_observation(category="performance"))) == 1

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, engine):
        received = []
        engine.alerts_triggered.subscribe(received.append)

        alerts = await engine.evaluate(make_observation())

        assert received == alerts

    @pytest.mark.asyncio
    async def test_message_includes_deviation(self, engine):
        alerts = await engine.evaluate(make_observation(deviation=11.0))
        assert "deviation 11.00" in alerts[0].message
        assert "web-1" in alerts[0].message


class TestSuppression:
    """Test cooldown and rate limiting."""

    @pytest.mark.asyncio
    async def test_cooldown_then_new_alert(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        first = await engine.evaluate(make_observation(timestamp=clock.now))
        clock.advance(60)
        second = await engine.evaluate(make_observation(timestamp=clock.now))
        clock.advance(901)
        third = await engine.evaluate(make_observation(timestamp=clock.now))

        assert len(first) == 1
        assert second == []
        assert len(third) == 1
        assert third[0].id == 2
        assert engine.counters["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_cooldown_is_per_resource(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        await engine.evaluate(make_observation(resource_id="web-1"))
        alerts = await engine.evaluate(make_observation(resource_id="web-2"))

        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_resolved_alert_does_not_suppress(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        first = await engine.evaluate(make_observation())
        engine.resolve(first[0].id)
        second = await engine.evaluate(make_observation())

        assert len(second) == 1

    @pytest.mark.asyncio
    async def test_rule_cooldown_override(self, settings, clock):
        engine = AlertRuleEngine(
            settings, channels={}, rules=[severity_rule(cooldown=10)], clock=clock
        )
        await engine.evaluate(make_observation())
        clock.advance(11)
        assert len(await engine.evaluate(make_observation())) == 1

    @pytest.mark.asyncio
    async def test_hourly_rate_limit(self, settings, clock):
        engine = AlertRuleEngine(
            settings,
            channels={},
            rules=[severity_rule(cooldown=0, max_alerts_per_hour=2)],
            clock=clock,
        )

        results = []
        for _ in range(3):
            results.append(await engine.evaluate(make_observation()))
            clock.advance(1)
        clock.advance(3600)
        results.append(await engine.evaluate(make_observation()))

        assert [len(r) for r in results] == [1, 1, 0, 1]


class TestCorrelation:
    """Test correlation of related alerts."""

    @pytest.mark.asyncio
    async def test_time_window(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        first = await engine.evaluate(make_observation(resource_id="db-1"))
        clock.advance(120)
        second = await engine.evaluate(make_observation(resource_id="web-1"))

        assert second[0].correlated_alerts == [first[0].id]

    @pytest.mark.asyncio
    async def test_outside_window_uncorrelated(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        await engine.evaluate(make_observation(resource_id="db-1"))
        clock.advance(400)
        second = await engine.evaluate(make_observation(resource_id="web-1"))

        assert second[0].correlated_alerts == []

    @pytest.mark.asyncio
    async def test_dependency_graph(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)
        engine.register_dependency("web-1", "db-1")

        first = await engine.evaluate(make_observation(resource_id="db-1"))
        clock.advance(400)
        second = await engine.evaluate(make_observation(resource_id="web-1"))

        assert second[0].correlated_alerts == [first[0].id]

    @pytest.mark.asyncio
    async def test_acknowledged_alerts_not_correlated(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)

        first = await engine.evaluate(make_observation(resource_id="db-1"))
        engine.acknowledge(first[0].id)
        second = await engine.evaluate(make_observation(resource_id="web-1"))

        assert second[0].correlated_alerts == []


class TestSuggestedActions:
    """Test action suggestions."""

    def test_defaults(self, engine):
        assert engine.suggest_actions("high_cpu") == ["check_system_load", "review_processes"]

    def test_by_category(self, engine):
        assert "restart_service" in engine.suggest_actions("high_cpu", "availability")

    def test_rule_overrides_category(self, engine):
        engine.register_suggested_actions(["page_oncall"], rule_id="high_cpu")
        assert engine.suggest_actions("high_cpu", "availability") == ["page_oncall"]

    def test_register_requires_target(self, engine):
        with pytest.raises(ValueError):
            engine.register_suggested_actions(["noop"])

    @pytest.mark.asyncio
    async def test_attached_to_alert(self, engine):
        alerts = await engine.evaluate(make_observation(category="capacity"))
        assert alerts[0].suggested_actions == engine.suggest_actions("high_cpu", "capacity")


class TestNotifications:
    """Test channel delivery."""

    @pytest.mark.asyncio
    async def test_failure_is_counted_and_other_channels_still_send(self, settings, clock):
        recording = RecordingChannel()
        engine = AlertRuleEngine(
            settings,
            channels={
                "failing": FailingChannel(),
                "unexpected": FailingChannel(RuntimeError("x")),
                "log": recording,
            },
            rules=[severity_rule(channels=["failing", "unexpected", "log", "missing"])],
            clock=clock,
        )

        alerts = await engine.evaluate(make_observation())

        assert len(alerts) == 1
        assert recording.sent == alerts
        assert engine.counters["notification_failures"] == 2

    def test_register_channel(self, engine):
        channel = RecordingChannel()
        engine.register_channel(channel)
        assert engine.channels["recording"] is channel


class TestRemediationHandler:
    """Test automated remediation requests."""

    @pytest.fixture
    def remediation_settings(self):
        return MonitoringSettings(
            system_collection_enabled=False,
            self_healing_enabled=True,
            automated_remediation_enabled=True,
        )

    @pytest.mark.asyncio
    async def test_handler_called(self, remediation_settings, clock):
        engine = AlertRuleEngine(remediation_settings, channels={}, clock=clock)
        engine.remediation_handler = AsyncMock()

        alerts = await engine.evaluate(make_observation())

        engine.remediation_handler.assert_awaited_once_with(alerts[0], engine.rules["high_cpu"])
        assert engine.counters["remediations_requested"] == 1

    @pytest.mark.asyncio
    async def test_not_called_when_disabled(self, engine):
        engine.remediation_handler = AsyncMock()
        await engine.evaluate(make_observation())
        engine.remediation_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_called_without_rule_opt_in(self, remediation_settings, clock):
        engine = AlertRuleEngine(
            remediation_settings, channels={}, rules=[severity_rule()], clock=clock
        )
        engine.remediation_handler = AsyncMock()
        await engine.evaluate(make_observation())
        engine.remediation_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handler_failure_keeps_alert(self, remediation_settings, clock):
        engine = AlertRuleEngine(remediation_settings, channels={}, clock=clock)
        engine.remediation_handler = AsyncMock(side_effect=RuntimeError("boom"))

        alerts = await engine.evaluate(make_observation())

        assert len(alerts) == 1
        assert engine.get_alert(alerts[0].id) is alerts[0]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_evaluation(self, remediation_settings, clock):
        engine = AlertRuleEngine(
            remediation_settings,
            channels={},
            rules=[*default_rules(), severity_rule()],
            clock=clock,
        )
        engine.remediation_handler = AsyncMock()

        def explode(alert):
            raise RuntimeError("listener crashed")

        engine.alerts_triggered.subscribe(explode)

        alerts = await engine.evaluate(make_observation())

        assert [a.rule_id for a in alerts] == ["high_cpu", "anomaly"]
        engine.remediation_handler.assert_awaited_once_with(alerts[0], engine.rules["high_cpu"])


class TestLifecycle:
    """Test acknowledge and resolve transitions."""

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, engine, clock):
        alert = (await engine.evaluate(make_observation()))[0]
        acknowledged = []
        engine.alerts_acknowledged.subscribe(acknowledged.append)

        engine.acknowledge(alert.id, operator="alice")
        assert alert.status is AlertStatus.ACKNOWLEDGED
        assert alert.acknowledged_by == "alice"
        assert alert.acknowledged_at.timestamp() == clock.now
        assert acknowledged == [alert]

        engine.resolve(alert.id)
        assert alert.status is AlertStatus.RESOLVED
        assert alert.resolved_at is not None
        assert engine.active_alerts() == []

    @pytest.mark.asyncio
    async def test_resolve_directly(self, engine):
        alert = (await engine.evaluate(make_observation()))[0]
        engine.resolve(alert.id)
        assert alert.status is AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, engine):
        alert = (await engine.evaluate(make_observation()))[0]
        engine.resolve(alert.id)

        with pytest.raises(InvalidAlertTransition):
            engine.acknowledge(alert.id)
        with pytest.raises(InvalidAlertTransition):
            engine.resolve(alert.id)

    def test_unknown_alert(self, engine):
        with pytest.raises(AlertNotFoundError):
            engine.acknowledge(99)
        with pytest.raises(AlertNotFoundError):
            engine.get_alert(0)

    @pytest.mark.asyncio
    async def test_capacity_eviction(self, clock):
        settings = MonitoringSettings(system_collection_enabled=False, alert_capacity=2)
        engine = AlertRuleEngine(
            settings, channels={}, rules=[severity_rule(cooldown=0)], clock=clock
        )
        for _ in range(3):
            await engine.evaluate(make_observation())

        with pytest.raises(AlertNotFoundError):
            engine.get_alert(1)
        assert engine.get_alert(3).id == 3
        assert [a.id for a in engine.active_alerts()] == [2, 3]
        assert engine.get_alert_summary()["evicted"] == 1

    @pytest.mark.asyncio
    async def test_alert_times_only_kept_for_rate_limited_rules(self, clock):
        settings = MonitoringSettings(system_collection_enabled=False, alert_capacity=10)
        engine = AlertRuleEngine(
            settings,
            channels={},
            rules=[
                severity_rule(cooldown=0),
                severity_rule(id="limited", cooldown=0, max_alerts_per_hour=3),
            ],
            clock=clock,
        )
        for _ in range(50):
            await engine.evaluate(make_observation())
            clock.advance(600)

        assert len(engine.alerts) == 10
        assert "anomaly" not in engine._rule_alert_times
        assert len(engine._rule_alert_times["limited"]) <= 3


class TestQueries:
    """Test listing and summaries."""

    @pytest.mark.asyncio
    async def test_list_alerts(self, settings, clock):
        engine = AlertRuleEngine(settings, channels={}, rules=[severity_rule()], clock=clock)
        await engine.evaluate(make_observation(resource_id="web-1"))
        await engine.evaluate(make_observation(resource_id="web-2"))
        await engine.evaluate(make_observation(resource_id="web-3"))
        engine.resolve(1)

        assert [a.id for a in engine.list_alerts()] == [3, 2, 1]
        assert [a.id for a in engine.list_alerts(status=AlertStatus.RESOLVED)] == [1]
        assert [a.id for a in engine.list_alerts(resource_id="web-2")] == [2]
        assert [a.id for a in engine.list_alerts(limit=1)] == [3]

    @pytest.mark.asyncio
    async def test_summary(self, engine):
        await engine.evaluate(make_observation())

        summary = engine.get_alert_summary()

        assert summary["total_rules"] == 1
        assert summary["enabled_rules"] == 1
        assert summary["alerts_by_status"] == {"active": 1, "acknowledged": 0, "resolved": 0}
        assert summary["open_by_priority"] == {4: 1}
        assert summary["alerts_last_24h"] == 1
        assert summary["triggered"] == 1

    @pytest.mark.asyncio
    async def test_to_dict(self, engine):
        alert = (await engine.evaluate(make_observation()))[0]
        data = alert.to_dict()
        assert data["status"] == "active"
        assert data["severity"] == "high"
        assert data["created_at"].startswith("2023-11-14")

    def test_remove_rule(self, engine):
        assert engine.remove_rule("high_cpu") is True
        assert engine.remove_rule("high_cpu") is False
