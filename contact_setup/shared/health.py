"""
Service health probes for the installer.

The installer is only useful while it can keep session state and write
into its install root, so those are what ``/health`` reports on. A probe
marked critical takes the whole service down to ``unhealthy``; any other
failing probe only degrades it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Probe = Callable[[], Tuple[bool, str]]


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ProbeResult(BaseModel):
    """Outcome of a single probe."""

    name: str = Field(..., description="Probe name")
    passed: bool = Field(..., description="Whether the probe succeeded")
    critical: bool = Field(False, description="A failing critical probe makes the service unhealthy")
    detail: str = Field("", description="Human readable outcome")
    duration_ms: float = Field(0.0, description="Time spent running the probe")


class HealthReport(BaseModel):
    service_name: str
    version: str
    status: HealthStatus
    checks: List[ProbeResult] = Field(default_factory=list)
    uptime_seconds: float = 0.0
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class _Registration(NamedTuple):
    probe: Probe
    critical: bool


class HealthChecker:
    """Runs the registered probes and folds them into one status."""

    def __init__(self, service_name: str, version: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.service_name = service_name
        self.version = version
        self._clock = clock
        self._started = clock()
        self._probes: Dict[str, _Registration] = {}

    def register(self, name: str, probe: Probe, *, critical: bool = False) -> None:
        self._probes[name] = _Registration(probe, critical)
        logger.debug("Health probe registered: %s (critical=%s)", name, critical)

    def _run(self, name: str, registration: _Registration) -> ProbeResult:
        started = self._clock()
        try:
            passed, detail = registration.probe()
        except Exception as exc:
            # a probe that blows up is a failed probe, not a failed request
            logger.exception("Health probe %s raised", name)
            passed, detail = False, f"{type(exc).__name__}: {exc}"
        return ProbeResult(
            name=name,
            passed=bool(passed),
            critical=registration.critical,
            detail=detail,
            duration_ms=round((self._clock() - started) * 1000, 2),
        )

    def report(self, only: Optional[List[str]] = None) -> HealthReport:
        names = only if only is not None else list(self._probes)
        results = [self._run(name, self._probes[name]) for name in names if name in self._probes]

        failed = [r for r in results if not r.passed]
        if any(r.critical for r in failed):
            status = HealthStatus.UNHEALTHY
        elif failed:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthReport(
            service_name=self.service_name,
            version=self.version,
            status=status,
            checks=results,
            uptime_seconds=round(self._clock() - self._started, 3),
        )
