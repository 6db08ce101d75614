"""Self-healing: matching issues to healing rules and running remediation actions."""

import asyncio
import inspect
import re
import shlex
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import psutil
import structlog

from ..core.collaborators import ActivitySink, LogActivitySink
from ..core.config import MonitoringSettings, settings as default_settings
from ..core.exceptions import ActionExecutionError, NoApplicableRemediationError, ValidationError
from .arena import Arena
from .events import Subscription

logger = structlog.get_logger(__name__)


@dataclass
class Issue:
    """A detected problem handed to the orchestrator."""

    type: str
    resource_id: str | None = None
    description: str = ""
    severity: str = "high"
    indicators: dict[str, float] = field(default_factory=dict)
    system_state: dict[str, Any] | None = None
    alert_id: int | None = None
    requested_by: str | None = None

    def __post_init__(self):
        if not self.type:
            raise ValidationError("Issue type is required", field="type", resource_id=self.resource_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "resource_id": self.resource_id,
            "description": self.description,
            "severity": self.severity,
            "indicators": dict(self.indicators),
            "alert_id": self.alert_id,
            "requested_by": self.requested_by,
        }


@dataclass
class RemediationAction:
    """A single automated operation, run by the executor named in ``type``."""

    id: str
    name: str
    type: str = "callable"
    command: str | None = None
    timeout: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "command": self.command,
            "timeout": self.timeout,
        }


@dataclass
class HealingRule:
    """Maps an issue type to an ordered list of action ids."""

    id: str
    name: str
    trigger: str
    actions: list[str]
    priority: int = 1
    max_retries: int = 0
    enabled: bool = True

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValidationError("max_retries cannot be negative", field="max_retries")
        if not self.actions:
            raise ValidationError("A healing rule needs at least one action", field="actions")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "actions": list(self.actions),
            "priority": self.priority,
            "max_retries": self.max_retries,
            "enabled": self.enabled,
        }


@dataclass
class ActionResult:
    action_id: str
    success: bool
    attempts: int = 1
    output: str = ""
    error: str | None = None
    timed_out: bool = False
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "success": self.success,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "timed_out": self.timed_out,
            "duration": self.duration,
        }


@dataclass
class ValidationResult:
    """Comparison of issue indicators before and after remediation."""

    effective: bool
    improvements: list[str] = field(default_factory=list)
    regressions: list[str] = field(default_factory=list)
    compared: dict[str, dict[str, float | None]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "effective": self.effective,
            "improvements": list(self.improvements),
            "regressions": list(self.regressions),
            "compared": {k: dict(v) for k, v in self.compared.items()},
        }


@dataclass
class HealingRecord:
    id: int
    issue: Issue
    rule_id: str
    results: list[ActionResult]
    success: bool
    before_state: dict[str, Any]
    after_state: dict[str, Any]
    validation: ValidationResult
    started_at: float
    finished_at: float

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue": self.issue.to_dict(),
            "rule_id": self.rule_id,
            "results": [r.to_dict() for r in self.results],
            "success": self.success,
            "before_state": dict(self.before_state),
            "after_state": dict(self.after_state),
            "validation": self.validation.to_dict(),
            "started_at": datetime.fromtimestamp(self.started_at, UTC).isoformat(),
            "finished_at": datetime.fromtimestamp(self.finished_at, UTC).isoformat(),
            "duration": self.duration,
        }


@runtime_checkable
class RemediationExecutor(Protocol):
    """Runs one remediation action, returning its output or raising on failure."""

    async def execute(self, action: RemediationAction, issue: Issue) -> str: ...


class CallableExecutor:
    """Runs Python callables registered per action id."""

    def __init__(self, handlers: Mapping[str, Callable[[Issue], Any]] | None = None):
        self.handlers: dict[str, Callable[[Issue], Any]] = dict(handlers or {})

    def register(self, action_id: str, handler: Callable[[Issue], Any]) -> None:
        self.handlers[action_id] = handler

    async def execute(self, action: RemediationAction, issue: Issue) -> str:
        handler = self.handlers.get(action.id)
        if handler is None:
            raise ActionExecutionError("No handler registered", action.id)
        result = handler(issue)
        if inspect.isawaitable(result):
            result = await result
        return "" if result is None else str(result)


_PLACEHOLDER = re.compile(r"\{(resource|issue_type)\}")


class CommandExecutor:
    """Runs an action's shell command.

    ``{resource}`` and ``{issue_type}`` placeholders in the command are
    substituted with shell-quoted issue values.
    """

    async def execute(self, action: RemediationAction, issue: Issue) -> str:
        if not action.command:
            raise ActionExecutionError("Action has no command", action.id)

        placeholders = {
            "resource": shlex.quote(issue.resource_id or ""),
            "issue_type": shlex.quote(issue.type),
        }
        # Only the named placeholders; other braces belong to the command
        command = _PLACEHOLDER.sub(lambda match: placeholders[match.group(1)], action.command)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        output = stdout.decode(errors="replace").strip()
        if process.returncode != 0:
            raise ActionExecutionError(
                f"Command exited with status {process.returncode}: {output}", action.id
            )
        return output


@runtime_checkable
class SystemStateProbe(Protocol):
    async def capture(self, issue: Issue) -> dict[str, Any]: ...


class PsutilStateProbe:
    """Captures host resource usage with psutil."""

    def _snapshot(self) -> dict[str, Any]:
        return {
            "timestamp": time.time(),
            "cpu_usage": psutil.cpu_percent(interval=None),
            "memory_usage": psutil.virtual_memory().percent,
            "disk_usage": psutil.disk_usage("/").percent,
            "process_count": len(psutil.pids()),
        }

    async def capture(self, issue: Issue) -> dict[str, Any]:
        return await asyncio.to_thread(self._snapshot)


def validate_remediation(
    issue: Issue, before: Mapping[str, Any], after: Mapping[str, Any], actions_succeeded: bool
) -> ValidationResult:
    """Compare the issue's indicators before and after remediation.

    An indicator improved when its value went down. With no measurable
    indicators, effectiveness follows the action outcome.
    """
    compared: dict[str, dict[str, float | None]] = {}
    improvements: list[str] = []
    regressions: list[str] = []

    for name, reported in issue.indicators.items():
        before_value = before.get(name, reported)
        after_value = after.get(name)
        compared[name] = {"before": before_value, "after": after_value}
        if not isinstance(after_value, int | float) or not isinstance(before_value, int | float):
            continue
        if after_value < before_value:
            improvements.append(f"{name}_reduced")
        elif after_value > before_value:
            regressions.append(f"{name}_increased")

    measured = [c for c in compared.values() if isinstance(c["after"], int | float)]
    if measured:
        effective = actions_succeeded and not regressions and bool(improvements)
    else:
        effective = actions_succeeded

    return ValidationResult(
        effective=effective, improvements=improvements, regressions=regressions, compared=compared
    )


def default_actions() -> list[RemediationAction]:
    return [
        RemediationAction(
            id="restart_service",
            name="Restart Service",
            type="command",
            command="systemctl restart {resource}",
        ),
    ]


def default_healing_rules() -> list[HealingRule]:
    return [
        HealingRule(
            id="auto_restart",
            name="Auto Restart Service",
            trigger="service_failure",
            actions=["restart_service"],
            priority=1,
        ),
    ]


class HealingOrchestrator:
    """Selects a healing rule for an issue and executes its actions."""

    def __init__(
        self,
        settings: MonitoringSettings | None = None,
        executors: Mapping[str, RemediationExecutor] | None = None,
        probe: SystemStateProbe | None = None,
        activity_sink: ActivitySink | None = None,
        clock: Callable[[], float] = time.time,
        load_defaults: bool = True,
    ):
        """Initialize the orchestrator.

        Args:
            settings: Monitoring settings; defaults to the global settings
            executors: Executors keyed by action type
            probe: System state capture before and after remediation
            activity_sink: Audit log destination
            clock: Source of epoch-second timestamps
            load_defaults: Register the built-in rule and action
        """
        self.settings = settings or default_settings
        self.executors: dict[str, RemediationExecutor] = dict(
            executors if executors is not None
            else {"callable": CallableExecutor(), "command": CommandExecutor()}
        )
        self.probe = probe or PsutilStateProbe()
        self.activity_sink = activity_sink or LogActivitySink()
        self.clock = clock

        self.rules: dict[str, HealingRule] = {}
        self.actions: dict[str, RemediationAction] = {}
        self.records: Arena[HealingRecord] = Arena()
        self.healing_executed: Subscription[HealingRecord] = Subscription("healing_executed")
        self.counters = {"executed": 0, "succeeded": 0, "failed": 0, "no_applicable_rule": 0}

        if load_defaults:
            for action in default_actions():
                self.add_action(action)
            for rule in default_healing_rules():
                self.add_rule(rule)

    def add_rule(self, rule: HealingRule) -> HealingRule:
        self.rules[rule.id] = rule
        logger.debug("Added healing rule", rule=rule.id, trigger=rule.trigger)
        return rule

    def add_action(self, action: RemediationAction) -> RemediationAction:
        self.actions[action.id] = action
        return action

    def register_executor(self, action_type: str, executor: RemediationExecutor) -> None:
        self.executors[action_type] = executor

    def find_rule(self, issue: Issue) -> HealingRule | None:
        """Highest-priority enabled rule triggered by the issue type."""
        candidates = [r for r in self.rules.values() if r.enabled and r.trigger == issue.type]
        if not candidates:
            return None
        return sorted(candidates, key=lambda r: r.priority, reverse=True)[0]

    async def heal(self, issue: Issue) -> HealingRecord:
        """Run the best matching healing rule for an issue.

        Actions run in order and independently; the record is successful only
        if every action succeeded.

        Raises:
            NoApplicableRemediationError: No enabled rule matches the issue type
        """
        rule = self.find_rule(issue)
        if rule is None:
            self.counters["no_applicable_rule"] += 1
            logger.warning("No applicable healing rule", issue_type=issue.type, resource=issue.resource_id)
            raise NoApplicableRemediationError(
                "No applicable healing rules found", issue.type, resource_id=issue.resource_id
            )

        started = self.clock()
        before = dict(issue.system_state) if issue.system_state else await self._capture(issue)

        results = [await self._run_action(action_id, issue, rule) for action_id in rule.actions]
        success = all(result.success for result in results)

        after = await self._capture(issue)
        validation = validate_remediation(issue, before, after, success)
        finished = self.clock()

        record = self.records.append(
            lambda key: HealingRecord(
                id=key,
                issue=issue,
                rule_id=rule.id,
                results=results,
                success=success,
                before_state=before,
                after_state=after,
                validation=validation,
                started_at=started,
                finished_at=finished,
            )
        )

        self.counters["executed"] += 1
        self.counters["succeeded" if success else "failed"] += 1
        log = logger.info if success else logger.warning
        log(
            "Self-healing executed",
            record_id=record.id,
            rule=rule.id,
            issue_type=issue.type,
            resource=issue.resource_id,
            success=success,
            actions=len(results),
            effective=validation.effective,
        )

        await self._audit(
            {
                "activity": "self_healing_executed",
                "record_id": record.id,
                "rule_id": rule.id,
                "issue_type": issue.type,
                "resource_id": issue.resource_id,
                "success": success,
                "requested_by": issue.requested_by,
            }
        )
        await self.healing_executed.apublish(record)
        return record

    async def _run_action(self, action_id: str, issue: Issue, rule: HealingRule) -> ActionResult:
        action = self.actions.get(action_id)
        if action is None:
            return ActionResult(action_id=action_id, success=False, attempts=0, error="Unknown action")
        executor = self.executors.get(action.type)
        if executor is None:
            return ActionResult(
                action_id=action_id,
                success=False,
                attempts=0,
                error=f"No executor for action type {action.type}",
            )

        timeout = action.timeout or self.settings.remediation_timeout
        error: str | None = None
        timed_out = False
        started = self.clock()

        for attempt in range(1, rule.max_retries + 2):
            try:
                output = await asyncio.wait_for(executor.execute(action, issue), timeout=timeout)
                return ActionResult(
                    action_id=action_id,
                    success=True,
                    attempts=attempt,
                    output=output,
                    duration=self.clock() - started,
                )
            except asyncio.TimeoutError:
                timed_out = True
                error = f"Timed out after {timeout}s"
            except Exception as e:
                timed_out = False
                error = str(e)
            logger.warning(
                "Remediation action failed",
                action=action_id,
                attempt=attempt,
                max_retries=rule.max_retries,
                error=error,
            )

        return ActionResult(
            action_id=action_id,
            success=False,
            attempts=rule.max_retries + 1,
            error=error,
            timed_out=timed_out,
            duration=self.clock() - started,
        )

    async def _capture(self, issue: Issue) -> dict[str, Any]:
        try:
            return dict(await self.probe.capture(issue))
        except Exception as e:
            logger.error("System state capture failed", error=str(e))
            return {"error": str(e)}

    async def _audit(self, entry: dict[str, Any]) -> None:
        try:
            result = self.activity_sink.record(entry)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Activity sink failed", error=str(e))

    def get_record(self, record_id: int) -> HealingRecord | None:
        return self.records.get(record_id)

    def list_records(self, limit: int | None = None) -> list[HealingRecord]:
        records = list(reversed(self.records.values()))
        return records[:limit] if limit is not None else records

    def success_rate(self) -> float:
        """Percentage of successful healings; 100 when nothing has run yet."""
        if not len(self.records):
            return 100.0
        successful = sum(1 for record in self.records if record.success)
        return successful / len(self.records) * 100

    def effectiveness_rate(self) -> float:
        """Percentage of healings whose before/after comparison showed improvement."""
        if not len(self.records):
            return 100.0
        effective = sum(1 for record in self.records if record.validation.effective)
        return effective / len(self.records) * 100
