"""Shared fixtures and test configuration for pytest."""

import asyncio
import sys
from typing import Any

import pytest
import structlog
from fastapi.testclient import TestClient

from healwatch.api.main import create_app
from healwatch.core.collaborators import Operator, StaticSessionLookup
from healwatch.core.config import MonitoringSettings
from healwatch.core.exceptions import ChannelDeliveryError
from healwatch.monitoring.alerts import AlertRuleEngine
from healwatch.monitoring.baseline import Severity, Trend
from healwatch.monitoring.channels import NotificationChannel
from healwatch.monitoring.forecasting import Forecaster
from healwatch.monitoring.healing import HealingOrchestrator
from healwatch.monitoring.health import HealthChecker
from healwatch.monitoring.manager import MonitoringManager
from healwatch.monitoring.metrics import MetricsCollector
from healwatch.monitoring.store import ClassifiedObservation, MetricStore, ObservationContext

# Configure structlog before modules cache loggers with the default configuration
structlog.reset_defaults()
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.plain_traceback),
    ],
    context_class=dict,
    # Bound once so CLI runners swapping sys.stdout never capture log lines
    logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    cache_logger_on_first_use=False,
)

START_TIME = 1_700_000_000.0
OPERATOR_TOKEN = "session-token-1"
OPERATOR = Operator(id="op-1", name="Dana Reyes", roles=("oncall",))


class FakeClock:
    """Manually advanced epoch-second clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingChannel(NotificationChannel):
    """Channel that keeps every alert it is asked to send."""

    name = "recording"

    def __init__(self):
        self.sent = []

    async def send(self, alert) -> None:
        self.sent.append(alert)


class FailingChannel(NotificationChannel):
    """Channel whose delivery always fails."""

    name = "failing"

    def __init__(self, error: Exception | None = None):
        self.error = error or ChannelDeliveryError("Endpoint unreachable", self.name)

    async def send(self, alert) -> None:
        raise self.error


class StaticProbe:
    """System state probe returning fixed snapshots, one per call."""

    def __init__(self, *snapshots: dict[str, Any]):
        self.snapshots = list(snapshots) or [{}]
        self.calls = 0

    async def capture(self, issue) -> dict[str, Any]:
        snapshot = self.snapshots[min(self.calls, len(self.snapshots) - 1)]
        self.calls += 1
        return dict(snapshot)


class StubExecutor:
    """Remediation executor with scripted failures and delays."""

    def __init__(self, fail_times: int = 0, output: str = "ok", delay: float = 0.0):
        self.fail_times = fail_times
        self.output = output
        self.delay = delay
        self.calls = []

    async def execute(self, action, issue) -> str:
        self.calls.append((action.id, issue.type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.fail_times:
            raise RuntimeError(f"attempt {len(self.calls)} failed")
        return self.output


def make_observation(
    value: float = 95.0,
    severity: Severity = Severity.CRITICAL,
    resource_id: str = "web-1",
    metric_name: str = "cpu_usage",
    deviation: float | None = 1.0,
    category: str | None = None,
    timestamp: float = START_TIME,
) -> ClassifiedObservation:
    return ClassifiedObservation(
        resource_id=resource_id,
        metric_name=metric_name,
        value=value,
        timestamp=timestamp,
        severity=severity,
        trend=Trend.STABLE,
        deviation=deviation,
        context=ObservationContext(category=category),
        labels={"resource": resource_id},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings with host collection switched off so tests never read the machine."""
    return MonitoringSettings(system_collection_enabled=False)


@pytest.fixture
def store(settings, clock):
    return MetricStore(settings, clock=clock)


@pytest.fixture
def recording_channel():
    return RecordingChannel()


@pytest.fixture
def engine(settings, clock, recording_channel):
    return AlertRuleEngine(settings, channels={"log": recording_channel}, clock=clock)


@pytest.fixture
def probe():
    return StaticProbe({"cpu_usage": 95.0}, {"cpu_usage": 40.0})


@pytest.fixture
def stub_executor():
    return StubExecutor()


@pytest.fixture
def make_manager(clock, probe, stub_executor):
    """Factory building an isolated manager from settings overrides."""

    def _make(**overrides) -> MonitoringManager:
        overrides.setdefault("system_collection_enabled", False)
        manager_settings = MonitoringSettings(**overrides)
        store = MetricStore(manager_settings, clock=clock)
        orchestrator = HealingOrchestrator(
            manager_settings,
            executors={"command": stub_executor},
            probe=probe,
            clock=clock,
        )
        return MonitoringManager(
            manager_settings,
            store=store,
            alert_engine=AlertRuleEngine(
                manager_settings, channels={"log": RecordingChannel()}, clock=clock
            ),
            forecaster=Forecaster(store, manager_settings, clock=clock),
            orchestrator=orchestrator,
            collector=MetricsCollector(store, resource_id="host-1"),
            health_checker=HealthChecker(builtin_checks=False),
            clock=clock,
        )

    return _make



# API


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def app(manager):
    return create_app(manager, StaticSessionLookup({OPERATOR_TOKEN: OPERATOR}))


@pytest.fixture
def client(app):
    """Test client running the application lifespan."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def operator_headers():
    return {"X-Session-Token": OPERATOR_TOKEN}


@pytest.fixture
def healing_client(make_manager):
    """Client for a manager with self-healing switched on."""
    manager = make_manager(self_healing_enabled=True)
    app = create_app(manager, StaticSessionLookup({OPERATOR_TOKEN: OPERATOR}))
    with TestClient(app) as test_client:
        yield test_client
