"""
Environment qualification for a target installation host.

Runs the runtime-version, capability, filesystem, connectivity and
existing-installation checks and folds them into a single leveled
report. Nothing here retries: the caller re-runs qualification when the
operator asks for a recheck.
"""

from __future__ import annotations

import importlib.util
import logging
import os
import platform
import re
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx

from ..shared.config import InstallerSettings
from .schemas import CheckLevel, EnvironmentCheckResult, QualificationReport

logger = logging.getLogger(__name__)

USER_AGENT = "ContactForm-Installer/1.0"

# Directories under the install root that the installer writes into.
WRITABLE_DIRECTORIES = ("config", "uploads")

# Artifacts whose presence indicates a previous (possibly partial) install.
INSTALL_MARKER = Path("config") / "installed.lock"
PARTIAL_INSTALL_ARTIFACTS = (
    Path(".env"),
    Path("config") / "database.yaml",
    Path("config") / "admin.yaml",
    Path("config") / "security.yaml",
)


_LEADING_DIGITS = re.compile(r"\d+")


def parse_version(value: str) -> Tuple[int, ...]:
    """Parse a dotted version string into a comparable tuple."""
    parts: List[int] = []
    for piece in value.split("."):
        match = _LEADING_DIGITS.match(piece)
        if not match:
            break
        parts.append(int(match.group()))
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def module_available(name: str) -> Callable[[], bool]:
    """Predicate factory: True when ``name`` can be imported."""

    def _check() -> bool:
        try:
            return importlib.util.find_spec(name) is not None
        except (ImportError, ValueError):
            return False

    return _check


@dataclass(frozen=True)
class Capability:
    """A runtime module the installed product relies on."""

    name: str
    predicate: Callable[[], bool]
    required: bool = True
    instruction: str = ""


DEFAULT_CAPABILITIES: Sequence[Capability] = (
    Capability("ssl", module_available("ssl"), True, "Rebuild Python with OpenSSL support."),
    Capability("zlib", module_available("zlib"), True, "Install zlib development headers and rebuild Python."),
    Capability("MySQL driver", module_available("pymysql"), True, "pip install PyMySQL"),
    Capability("SQLAlchemy", module_available("sqlalchemy"), True, "pip install SQLAlchemy"),
    Capability("Argon2", module_available("argon2"), True, "pip install argon2-cffi"),
    Capability("Redis client", module_available("redis"), False, "pip install redis (needed for shared sessions)"),
)


class ProbeUnavailable(Exception):
    """A connectivity transport could not be used at all."""


@dataclass
class ProbeOutcome:
    success: bool
    transport: str
    message: str
    latency_ms: Optional[float] = None
    details: Dict[str, object] = field(default_factory=dict)


class ConnectivityProbe:
    """Reachability probe with an HTTP primary and a TCP secondary transport."""

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        *,
        http_transport: Optional[httpx.BaseTransport] = None,
        tcp_connect: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._http_transport = http_transport
        self._tcp_connect = tcp_connect

    def _via_http(self) -> ProbeOutcome:
        start = time.time()
        try:
            with httpx.Client(
                transport=self._http_transport,
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                response = client.get(self.url)
        except httpx.TransportError as exc:
            raise ProbeUnavailable(str(exc)) from exc

        latency_ms = round((time.time() - start) * 1000, 2)
        if response.status_code == 200:
            return ProbeOutcome(True, "https", "Update server reachable", latency_ms, {"http_status": 200})
        return ProbeOutcome(
            False,
            "https",
            f"Update server answered HTTP {response.status_code}",
            latency_ms,
            {"http_status": response.status_code},
        )

    def _via_tcp(self) -> ProbeOutcome:
        parsed = urlparse(self.url)
        host = parsed.hostname or ""
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        start = time.time()
        try:
            conn = self._tcp_connect((host, port), timeout=self.timeout)
        except OSError as exc:
            raise ProbeUnavailable(str(exc)) from exc
        conn.close()
        latency_ms = round((time.time() - start) * 1000, 2)
        return ProbeOutcome(True, "tcp", f"Reached {host}:{port} over TCP", latency_ms)

    def run(self) -> ProbeOutcome:
        errors: List[str] = []
        for transport in (self._via_http, self._via_tcp):
            try:
                return transport()
            except ProbeUnavailable as exc:
                logger.info("Connectivity transport %s unavailable: %s", transport.__name__, exc)
                errors.append(str(exc))
        return ProbeOutcome(False, "none", "Connection failed: " + "; ".join(errors))


class EnvironmentQualifier:
    """Inspects the host and decides whether installation may proceed."""

    def __init__(
        self,
        settings: InstallerSettings,
        *,
        runtime_version: Optional[str] = None,
        capabilities: Optional[Sequence[Capability]] = None,
        probe: Optional[ConnectivityProbe] = None,
    ) -> None:
        self.settings = settings
        self.install_root = Path(settings.install_root)
        self.runtime_version = runtime_version or platform.python_version()
        self.capabilities = list(capabilities) if capabilities is not None else list(DEFAULT_CAPABILITIES)
        self.probe = probe or ConnectivityProbe(
            settings.connectivity_url, settings.connectivity_timeout_seconds
        )

    def check_runtime_version(self) -> EnvironmentCheckResult:
        current = parse_version(self.runtime_version)
        minimum = self.settings.min_python_version
        recommended = self.settings.recommended_python_version

        if current < parse_version(minimum):
            return EnvironmentCheckResult(
                status=False,
                level=CheckLevel.ERROR,
                message=f"Python {self.runtime_version} - requires {minimum}+",
                instructions=[
                    f"Install Python {recommended} or newer.",
                    "On managed hosting, select a newer runtime in the control panel.",
                ],
                details={"current": self.runtime_version, "required": minimum},
            )
        if current < parse_version(recommended):
            return EnvironmentCheckResult(
                status=True,
                level=CheckLevel.WARNING,
                message=f"Python {self.runtime_version} (compatible, {recommended}+ recommended)",
                instructions=[f"Upgrade to Python {recommended} when convenient."],
                details={"current": self.runtime_version, "required": minimum},
            )
        return EnvironmentCheckResult(
            status=True,
            level=CheckLevel.EXCELLENT,
            message=f"Python {self.runtime_version} (excellent)",
            details={"current": self.runtime_version, "required": minimum},
        )

    def check_capabilities(self) -> EnvironmentCheckResult:
        modules: Dict[str, object] = {}
        missing_required: List[Capability] = []
        missing_optional: List[Capability] = []

        for capability in self.capabilities:
            try:
                available = bool(capability.predicate())
            except Exception as exc:
                logger.warning("Capability check %s raised: %s", capability.name, exc)
                available = False
            modules[capability.name] = {"available": available, "required": capability.required}
            if not available:
                (missing_required if capability.required else missing_optional).append(capability)

        instructions = [c.instruction for c in missing_required + missing_optional if c.instruction]
        details = {"modules": modules}

        if missing_required:
            names = ", ".join(c.name for c in missing_required)
            return EnvironmentCheckResult(
                status=False,
                level=CheckLevel.ERROR,
                message=f"Missing required modules: {names}",
                instructions=instructions,
                details=details,
            )
        if missing_optional:
            names = ", ".join(c.name for c in missing_optional)
            return EnvironmentCheckResult(
                status=True,
                level=CheckLevel.WARNING,
                message=f"Optional modules unavailable: {names}",
                instructions=instructions,
                details=details,
            )
        return EnvironmentCheckResult(
            status=True,
            level=CheckLevel.EXCELLENT,
            message="All required modules available",
            details=details,
        )

    def check_filesystem(self) -> EnvironmentCheckResult:
        problems: List[str] = []
        targets = [self.install_root] + [self.install_root / d for d in WRITABLE_DIRECTORIES]

        for target in targets:
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                problems.append(f"{target}: cannot create ({exc.strerror or exc})")
                continue
            if not os.access(target, os.W_OK | os.X_OK):
                problems.append(f"{target}: not writable")

        if problems:
            return EnvironmentCheckResult(
                status=False,
                level=CheckLevel.ERROR,
                message="Installation directory is not writable",
                instructions=[f"chmod 755 {self.install_root} and make it owned by the web server user."],
                details={"directory": str(self.install_root), "problems": problems},
            )
        return EnvironmentCheckResult(
            status=True,
            level=CheckLevel.EXCELLENT,
            message="Directory is writable",
            details={"directory": str(self.install_root)},
        )

    def check_connectivity(self) -> EnvironmentCheckResult:
        outcome = self.probe.run()
        critical = self.settings.connectivity_required
        details: Dict[str, object] = {"transport": outcome.transport, "url": self.probe.url, **outcome.details}
        if outcome.latency_ms is not None:
            details["latency_ms"] = outcome.latency_ms

        if outcome.success:
            return EnvironmentCheckResult(
                status=True,
                level=CheckLevel.EXCELLENT if outcome.transport == "https" else CheckLevel.GOOD,
                message=f"{outcome.message} via {outcome.transport}",
                critical=critical,
                details=details,
            )
        return EnvironmentCheckResult(
            status=False,
            level=CheckLevel.ERROR if critical else CheckLevel.WARNING,
            message=outcome.message,
            critical=critical,
            instructions=[
                "Allow outbound HTTPS from this server.",
                "If a proxy is required, set HTTPS_PROXY for the installer process.",
            ],
            details=details,
        )

    def check_existing_installation(self) -> EnvironmentCheckResult:
        if (self.install_root / INSTALL_MARKER).exists():
            return EnvironmentCheckResult(
                status=False,
                level=CheckLevel.ERROR,
                message="A completed installation already exists",
                instructions=[f"Remove {INSTALL_MARKER} to reinstall."],
                details={"complete": True, "partial": False},
            )

        leftovers = [str(p) for p in PARTIAL_INSTALL_ARTIFACTS if (self.install_root / p).exists()]
        if leftovers:
            return EnvironmentCheckResult(
                status=True,
                level=CheckLevel.WARNING,
                message="Previous partial installation detected; its files will be overwritten",
                details={"complete": False, "partial": True, "artifacts": leftovers},
            )
        return EnvironmentCheckResult(
            status=True,
            level=CheckLevel.EXCELLENT,
            message="Ready for fresh installation",
            details={"complete": False, "partial": False},
        )

    def run_qualification(self) -> QualificationReport:
        """Run every check and compute the aggregate ``qualified`` flag."""
        checks = {
            "runtime_version": self.check_runtime_version(),
            "capabilities": self.check_capabilities(),
            "filesystem": self.check_filesystem(),
            "connectivity": self.check_connectivity(),
            "existing_install": self.check_existing_installation(),
        }
        qualified = all(check.status for check in checks.values() if check.critical)

        for name, check in checks.items():
            if not check.status:
                logger.info("Qualification check %s failed: %s", name, check.message)

        return QualificationReport(checks=checks, qualified=qualified)
