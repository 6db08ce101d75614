"""Health checks for the monitoring subsystems and the host."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import psutil
import structlog

logger = structlog.get_logger(__name__)


class HealthStatus(Enum):
    """Health check status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


_SEVERITY = (HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY)


@dataclass
class HealthCheckResult:
    """Result of a health check."""

    name: str
    status: HealthStatus
    message: str
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass
class HealthConfig:
    """Configuration for health checking system."""

    timeout_seconds: float = 10.0
    cpu_degraded_percent: float = 75.0
    cpu_unhealthy_percent: float = 90.0
    memory_degraded_percent: float = 75.0
    memory_unhealthy_percent: float = 90.0
    disk_degraded_free_percent: float = 15.0
    disk_unhealthy_free_percent: float = 5.0


CheckFunc = Callable[[], Awaitable[HealthCheckResult | bool | str | None]]


class HealthChecker:
    """Runs registered checks and folds them into an overall status.

    A failing critical check makes the system unhealthy; a failing
    non-critical one only degrades it.
    """

    def __init__(self, config: HealthConfig | None = None, builtin_checks: bool = True):
        """Initialize health checker.

        Args:
            config: Health check configuration
            builtin_checks: Register the host resource checks
        """
        self.config = config or HealthConfig()
        self._checks: dict[str, CheckFunc] = {}
        self._critical: set[str] = set()
        self._results: dict[str, HealthCheckResult] = {}

        if builtin_checks:
            self.register_check("system_resources", self._check_system_resources)
            self.register_check("disk_space", self._check_disk_space)

    def register_check(self, name: str, check_func: CheckFunc, critical: bool = False) -> None:
        """Register a health check function.

        Args:
            name: Name of the health check
            check_func: Async function that performs the check
            critical: Whether failure makes the whole system unhealthy
        """
        self._checks[name] = check_func
        if critical:
            self._critical.add(name)
        else:
            self._critical.discard(name)
        logger.debug("Registered health check", name=name, critical=critical)

    def unregister_check(self, name: str) -> bool:
        if name not in self._checks:
            return False
        del self._checks[name]
        self._critical.discard(name)
        self._results.pop(name, None)
        return True

    @property
    def critical_checks(self) -> frozenset[str]:
        return frozenset(self._critical)

    async def run_all_checks(self) -> dict[str, HealthCheckResult]:
        """Run all registered health checks.

        Returns:
            Dictionary of health check results
        """
        results = {}
        for name, check_func in list(self._checks.items()):
            try:
                result = await self._run_single_check(name, check_func)
            except Exception as e:
                logger.error("Health check failed", name=name, error=str(e))
                result = HealthCheckResult(
                    name=name, status=HealthStatus.UNHEALTHY, message=f"Check failed: {e}"
                )
            results[name] = result
            self._results[name] = result
        return results

    async def _run_single_check(self, name: str, check_func: CheckFunc) -> HealthCheckResult:
        """Run a single health check with timeout."""
        start_time = time.time()
        try:
            result = await asyncio.wait_for(check_func(), timeout=self.config.timeout_seconds)
        except TimeoutError:
            return HealthCheckResult(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Check timed out after {self.config.timeout_seconds}s",
                duration_ms=(time.time() - start_time) * 1000,
            )

        duration_ms = (time.time() - start_time) * 1000
        if isinstance(result, HealthCheckResult):
            result.duration_ms = duration_ms
            return result
        if isinstance(result, bool):
            return HealthCheckResult(
                name=name,
                status=HealthStatus.HEALTHY if result else HealthStatus.UNHEALTHY,
                message="OK" if result else "Check failed",
                duration_ms=duration_ms,
            )
        return HealthCheckResult(
            name=name,
            status=HealthStatus.HEALTHY,
            message=str(result) if result else "OK",
            duration_ms=duration_ms,
        )

    @staticmethod
    def _grade(value: float, degraded: float, unhealthy: float) -> HealthStatus:
        if value > unhealthy:
            return HealthStatus.UNHEALTHY
        if value > degraded:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def _check_system_resources(self) -> HealthCheckResult:
        """Host CPU and memory pressure; the worse of the two wins."""
        cpu_percent, memory = await asyncio.to_thread(
            lambda: (psutil.cpu_percent(interval=None), psutil.virtual_memory())
        )
        cfg = self.config
        status = max(
            self._grade(cpu_percent, cfg.cpu_degraded_percent, cfg.cpu_unhealthy_percent),
            self._grade(memory.percent, cfg.memory_degraded_percent, cfg.memory_unhealthy_percent),
            key=_SEVERITY.index,
        )
        return HealthCheckResult(
            name="system_resources",
            status=status,
            message=f"cpu {cpu_percent:.1f}%, memory {memory.percent:.1f}%",
            details={
                "cpu_percent": cpu_percent,
                "memory_percent": memory.percent,
                "memory_available_gb": memory.available / (1024**3),
            },
        )

    async def _check_disk_space(self) -> HealthCheckResult:
        """Free space on the root volume."""
        disk = await asyncio.to_thread(psutil.disk_usage, "/")
        free_percent = disk.free / disk.total * 100
        # graded on used space
        status = self._grade(
            100 - free_percent,
            100 - self.config.disk_degraded_free_percent,
            100 - self.config.disk_unhealthy_free_percent,
        )
        return HealthCheckResult(
            name="disk_space",
            status=status,
            message=f"{free_percent:.1f}% free",
            details={
                "free_percent": free_percent,
                "free_gb": disk.free / (1024**3),
                "total_gb": disk.total / (1024**3),
            },
        )

    def get_overall_status(self, results: dict[str, HealthCheckResult] | None = None) -> HealthStatus:
        """Get overall system health status.

        Returns:
            ``unhealthy`` if a critical check is unhealthy, ``degraded`` if any
            other check is not healthy, ``healthy`` otherwise
        """
        results = self._results if results is None else results
        if not results:
            return HealthStatus.UNKNOWN

        if any(
            result.status is HealthStatus.UNHEALTHY
            for name, result in results.items()
            if name in self._critical
        ):
            return HealthStatus.UNHEALTHY

        if any(result.status is not HealthStatus.HEALTHY for result in results.values()):
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY

    async def check_health(self) -> dict[str, Any]:
        """Run every check and build the health response body."""
        results = await self.run_all_checks()
        overall = self.get_overall_status(results)
        return {
            "status": overall.value,
            "timestamp": datetime.now(UTC).isoformat(),
            "services": {name: result.to_dict() for name, result in results.items()},
            "summary": {
                "total_checks": len(results),
                **{
                    status.value: sum(1 for r in results.values() if r.status is status)
                    for status in HealthStatus
                },
            },
        }
