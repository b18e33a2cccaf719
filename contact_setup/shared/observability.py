"""
Structured logging and per-action tracing for the installer.

Each wizard action runs inside an :class:`ActionTrace`. The trace is keyed
by a fingerprint of the session token rather than the token itself, so one
installation attempt can be followed through the log without the log ever
holding a usable session credential.
"""

from __future__ import annotations

import hashlib
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from .config import InstallerSettings

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "pass",
        "db_pass",
        "db_password",
        "confirm_password",
        "csrf_token",
        "token",
        "session_key",
        "csrf_key",
        "encryption_key",
    }
)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def redact(context: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``context`` with secret-bearing keys masked."""
    return {key: ("***" if key in SENSITIVE_KEYS else value) for key, value in context.items()}


def session_fingerprint(token: Optional[str]) -> str:
    if not token:
        return "anonymous"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


class ActionTrace:
    """Timing and outcome of one wizard action."""

    def __init__(self, action: str, attempt: str) -> None:
        self.action = action
        self.attempt = attempt
        self.outcome = "ok"
        self.error_kind: Optional[str] = None
        self.notes: Dict[str, Any] = {}
        self._started = time.perf_counter()
        self._elapsed: Optional[float] = None

    def note(self, key: str, value: Any) -> None:
        self.notes[key] = value

    def fail(self, kind: str) -> None:
        """Mark a reported (non-raising) failure."""
        self.outcome = "failed"
        self.error_kind = kind

    def stop(self) -> None:
        if self._elapsed is None:
            self._elapsed = time.perf_counter() - self._started

    @property
    def elapsed_ms(self) -> float:
        elapsed = self._elapsed if self._elapsed is not None else time.perf_counter() - self._started
        return round(elapsed * 1000, 2)

    def summary(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "action": self.action,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.error_kind:
            data["error"] = self.error_kind
        data.update(redact(self.notes))
        return data


class ServiceObservability:
    """Action tracing and structured event logging for one service instance."""

    def __init__(self, service_name: str, version: str) -> None:
        self.service_name = service_name
        self.version = version
        self.logger = logging.getLogger(service_name)

    @contextmanager
    def trace_action(self, action: str, session_token: Optional[str] = None) -> Iterator[ActionTrace]:
        """Trace one wizard action.

        Unexpected exceptions mark the trace as ``error`` and propagate;
        handled failures are recorded with :meth:`ActionTrace.fail`.
        """
        trace = ActionTrace(action, session_fingerprint(session_token))
        try:
            yield trace
        except Exception as exc:
            trace.outcome = "error"
            trace.error_kind = type(exc).__name__
            raise
        finally:
            trace.stop()
            level = logging.INFO if trace.outcome == "ok" else logging.WARNING
            self.logger.log(
                level,
                "action %s %s in %.2fms",
                trace.action,
                trace.outcome,
                trace.elapsed_ms,
                extra={"trace": trace.summary(), "service": self.service_name},
            )

    def log_event(self, level: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Log a structured event; secret keys in ``context`` are masked."""
        extra = {
            "service": self.service_name,
            "version": self.version,
            "event_context": redact(context or {}),
        }
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(message, extra=extra)


def init_observability(settings: InstallerSettings) -> ServiceObservability:
    return ServiceObservability(settings.service_name, settings.service_version)
