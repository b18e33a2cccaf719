"""
Shared libraries for the installer service.

Provides common functionality:
- Configuration management
- Health probes
- Observability (action tracing and structured logging)
"""

from .config import InstallerSettings, dump_yaml, get_settings, load_yaml
from .health import HealthChecker, HealthReport, HealthStatus, ProbeResult
from .observability import (
    ActionTrace,
    ServiceObservability,
    configure_logging,
    init_observability,
    redact,
    session_fingerprint,
)

__all__ = [
    # Config
    "InstallerSettings",
    "dump_yaml",
    "get_settings",
    "load_yaml",
    # Health
    "HealthChecker",
    "HealthReport",
    "HealthStatus",
    "ProbeResult",
    # Observability
    "ActionTrace",
    "ServiceObservability",
    "configure_logging",
    "init_observability",
    "redact",
    "session_fingerprint",
]
