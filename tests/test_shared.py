from __future__ import annotations

import logging

import pytest

from contact_setup.shared.health import HealthChecker, HealthStatus
from contact_setup.shared.observability import redact, session_fingerprint


def test_non_critical_failure_degrades():
    checker = HealthChecker("svc", "1.0")
    checker.register("liveness", lambda: (True, "up"), critical=True)
    checker.register("session_store", lambda: (False, "Redis unreachable"))

    report = checker.report()

    assert report.status == HealthStatus.DEGRADED
    failed = [c for c in report.checks if not c.passed]
    assert [c.name for c in failed] == ["session_store"]


def test_raising_critical_probe_is_unhealthy():
    def broken():
        raise RuntimeError("boom")

    checker = HealthChecker("svc", "1.0")
    checker.register("liveness", broken, critical=True)

    report = checker.report()

    assert report.status == HealthStatus.UNHEALTHY
    assert report.checks[0].detail == "RuntimeError: boom"


def test_redact_masks_secret_keys():
    assert redact({"user": "acct", "db_password": "x", "csrf_token": "y"}) == {
        "user": "acct",
        "db_password": "***",
        "csrf_token": "***",
    }


def test_fingerprint_does_not_leak_token():
    fingerprint = session_fingerprint("a-very-secret-session-token")
    assert len(fingerprint) == 12
    assert "secret" not in fingerprint
    assert session_fingerprint(None) == "anonymous"


def test_trace_records_failure_outcome(observability, caplog):
    with caplog.at_level(logging.INFO, logger="contact-setup-test"):
        with observability.trace_action("create_admin", "token") as trace:
            trace.fail("conflict")
            trace.note("password", "Password1")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.trace["outcome"] == "failed"
    assert record.trace["error"] == "conflict"
    assert record.trace["password"] == "***"


def test_trace_marks_unexpected_errors(observability):
    with pytest.raises(KeyError):
        with observability.trace_action("install_system") as trace:
            raise KeyError("missing")
    assert trace.outcome == "error"
    assert trace.error_kind == "KeyError"
