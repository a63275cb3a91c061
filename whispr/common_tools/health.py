"""
Liveness and readiness reporting for the whispr API.

Readiness runs every registered dependency check concurrently, each under a
timeout, and reports the worst status seen. A check may be sync or async and
may return a bool, a ``HealthStatus``, or a ``(ok, message[, details])``
tuple where ``ok`` is either of those.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .logging import get_logger

logger = get_logger("health")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}

CheckOutcome = Union[bool, HealthStatus, Tuple[Any, ...]]
CheckFunc = Callable[[], Union[CheckOutcome, Awaitable[CheckOutcome]]]


@dataclass
class CheckResult:
    name: str
    status: HealthStatus
    message: str
    latency_ms: float
    details: Optional[Dict[str, Any]] = None


@dataclass
class HealthReport:
    service: str
    status: HealthStatus
    uptime_seconds: float
    checks: List[CheckResult] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status.value,
            "uptime_seconds": round(self.uptime_seconds, 3),
            "checked_at": self.checked_at.isoformat(),
            "checks": {
                check.name: {
                    "status": check.status.value,
                    "message": check.message,
                    "latency_ms": round(check.latency_ms, 3),
                    "details": check.details,
                }
                for check in self.checks
            },
        }


def _as_status(value: Any) -> HealthStatus:
    if isinstance(value, HealthStatus):
        return value
    return HealthStatus.HEALTHY if value else HealthStatus.UNHEALTHY


def _interpret(outcome: CheckOutcome) -> Tuple[HealthStatus, str, Optional[Dict[str, Any]]]:
    if isinstance(outcome, tuple):
        status = _as_status(outcome[0])
        message = outcome[1] if len(outcome) > 1 else status.value
        details = outcome[2] if len(outcome) > 2 else None
        return status, message, details
    status = _as_status(outcome)
    return status, status.value, None


def worst_status(statuses: List[HealthStatus]) -> HealthStatus:
    return max(statuses, key=_SEVERITY.__getitem__, default=HealthStatus.HEALTHY)


class HealthChecker:
    """Registry of named readiness checks for one service."""

    def __init__(self, service_name: str, check_timeout: float = 5.0):
        self.service_name = service_name
        self.check_timeout = check_timeout
        self.started_at = time.monotonic()
        self.readiness_checks: Dict[str, CheckFunc] = {}

    def add_readiness_check(self, name: str, check_func: CheckFunc) -> None:
        self.readiness_checks[name] = check_func

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def check_liveness(self) -> HealthReport:
        return HealthReport(service=self.service_name, status=HealthStatus.HEALTHY,
                            uptime_seconds=self.uptime())

    async def _run_check(self, name: str, check_func: CheckFunc) -> CheckResult:
        start = time.perf_counter()
        try:
            outcome = check_func()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=self.check_timeout)
            status, message, details = _interpret(outcome)
        except asyncio.TimeoutError:
            status, message, details = HealthStatus.UNHEALTHY, f"timed out after {self.check_timeout}s", None
        except Exception as e:
            # A failing check is a readiness result, not an API error
            logger.warning(f"Readiness check {name} raised {type(e).__name__}: {e}")
            status, message, details = HealthStatus.UNHEALTHY, str(e), {"error_type": type(e).__name__}
        return CheckResult(name=name, status=status, message=message,
                           latency_ms=(time.perf_counter() - start) * 1000, details=details)

    async def check_readiness(self) -> HealthReport:
        checks = await asyncio.gather(*(self._run_check(name, func)
                                        for name, func in self.readiness_checks.items()))
        report = HealthReport(service=self.service_name,
                              status=worst_status([check.status for check in checks]),
                              uptime_seconds=self.uptime(), checks=list(checks))
        if report.status != HealthStatus.HEALTHY:
            logger.warning(f"Readiness is {report.status.value}",
                           extra_fields={"failing": [c.name for c in checks if c.status != HealthStatus.HEALTHY]})
        return report


def job_queue_check(queue) -> CheckFunc:
    """Readiness check for the analysis queue; dead-lettered jobs degrade the service."""

    async def check():
        stats = await queue.stats()
        if stats.get("dead", 0):
            return HealthStatus.DEGRADED, f"{stats['dead']} dead-lettered analysis jobs", stats
        return True, "analysis queue reachable", stats

    return check
