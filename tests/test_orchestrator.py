from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict

import pytest

from contact_setup.installer.database import DatabaseProvisioner
from contact_setup.installer.environment import INSTALL_MARKER, EnvironmentQualifier
from contact_setup.installer.errors import ConnectivityError
from contact_setup.installer.schemas import SchemaInstallResult
from contact_setup.service.models import InstallStep
from contact_setup.service.orchestrator import CLEANUP_MARKER, INSTALL_LOCK, InstallationOrchestrator
from contact_setup.service.session_store import InMemorySessionStore

from conftest import FakeServer, reachable_probe

ADMIN_GRANTS = ["GRANT ALL PRIVILEGES ON *.* TO `acct_webuser`@`%`"]
DB_FIELDS = {"host": "db.internal", "user": "acct_webuser", "password": "s3cret!"}
ADMIN_FIELDS = {"email": "owner@glowhost.com", "password": "Password1", "confirm_password": "Password1"}


class SqliteServer(FakeServer):
    def __init__(self, engine, **kwargs) -> None:
        super().__init__(**kwargs)
        self._engine = engine

    def engine(self, database=None):
        return self._engine


class Wizard:
    """Drives the orchestrator the way the browser does."""

    def __init__(self, orchestrator: InstallationOrchestrator) -> None:
        self.orchestrator = orchestrator
        session = orchestrator.resume_session(None)
        self.token = session.token
        self.csrf_token = session.csrf_token

    def act(self, action: str, **fields: Any):
        payload: Dict[str, Any] = {"action": action, "csrf_token": self.csrf_token, **fields}
        outcome = self.orchestrator.perform(self.token, payload)
        if outcome.session_token:
            self.token = outcome.session_token
        return outcome

    @property
    def session(self):
        return self.orchestrator.store.load(self.token)


@pytest.fixture
def server(sqlite_engine):
    return SqliteServer(sqlite_engine, grants=ADMIN_GRANTS)


@pytest.fixture
def orchestrator(settings, observability, qualifier, fast_registrar, server, sqlite_engine):
    return InstallationOrchestrator(
        settings,
        InMemorySessionStore(),
        observability,
        qualifier=qualifier,
        provisioner=DatabaseProvisioner(server_factory=lambda creds: server),
        registrar=fast_registrar,
        engine_factory=lambda *args, **kwargs: sqlite_engine,
        clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def wizard(orchestrator) -> Wizard:
    return Wizard(orchestrator)


def run_to_admin(wizard: Wizard) -> None:
    assert wizard.act("check_environment").body["success"] is True
    assert wizard.act("install_database", **DB_FIELDS).body["success"] is True
    assert wizard.act("create_admin", **ADMIN_FIELDS).body["success"] is True


def test_csrf_mismatch_has_no_side_effects(wizard, tmp_path):
    wizard.csrf_token = "forged"
    outcome = wizard.act("check_environment")

    assert outcome.status_code == 403
    assert outcome.body == {"success": False, "message": "Invalid security token", "error": "csrf_mismatch"}
    assert wizard.session.environment_checked is False
    # the qualifier would have created the writable directories
    assert not (tmp_path / "config").exists()


def test_missing_session_is_rejected(orchestrator):
    outcome = orchestrator.perform(None, {"action": "check_environment", "csrf_token": "anything"})
    assert outcome.status_code == 403
    assert outcome.body["error"] == "csrf_mismatch"


def test_unknown_action_is_rejected(wizard):
    outcome = wizard.act("drop_everything")
    assert outcome.status_code == 400
    assert outcome.body["error"] == "unknown_action"


def test_csrf_is_checked_before_action_name(wizard):
    wizard.csrf_token = "forged"
    assert wizard.act("drop_everything").status_code == 403


def test_malformed_action_payload_is_a_validation_error(wizard):
    wizard.act("check_environment")
    outcome = wizard.act("install_database", host="db.internal", port="not-a-port")
    assert outcome.status_code == 400
    assert outcome.body["error"] == "validation_error"


def test_database_actions_require_environment_check(wizard, server):
    outcome = wizard.act("install_database", **DB_FIELDS)
    assert outcome.status_code == 409
    assert outcome.body["error"] == "step_order"
    assert server.pinged == []


def test_create_admin_refused_before_tables_exist(wizard, sqlite_engine):
    wizard.act("check_environment")
    session = wizard.session
    session.current_step = InstallStep.ADMIN_ACCOUNT
    wizard.orchestrator.store.save(wizard.token, session)

    outcome = wizard.act("create_admin", **ADMIN_FIELDS)

    assert outcome.status_code == 409
    assert wizard.session.admin_created is False


def test_check_environment_reports_web_root(wizard, tmp_path):
    body = wizard.act("check_environment").body
    assert body["web_root"] == str(tmp_path)
    assert body["can_proceed"] is True
    assert set(body["environment"]["checks"]) == {
        "runtime_version",
        "capabilities",
        "filesystem",
        "connectivity",
        "existing_install",
    }
    assert wizard.session.environment_checked is True


def test_failed_qualification_does_not_set_flag(settings, wizard):
    wizard.orchestrator.qualifier = EnvironmentQualifier(
        settings, runtime_version="3.8.0", capabilities=[], probe=reachable_probe()
    )
    body = wizard.act("check_environment").body
    assert body["success"] is False
    assert "runtime_version" in body["message"]
    assert wizard.session.environment_checked is False


def test_install_database_rotates_session_token(wizard):
    wizard.act("check_environment")
    old_token = wizard.token

    body = wizard.act("install_database", **DB_FIELDS).body

    assert body["schema_installed"] is True
    assert body["ready_for_next_step"] is True
    assert body["final_database"].startswith("acct_contactform_")
    assert wizard.token != old_token
    assert wizard.orchestrator.store.load(old_token) is None
    assert wizard.session.tables_created is True
    assert wizard.session.database_config.name == body["final_database"]


def test_provisioning_fallback_is_reported(wizard, server):
    server._grants = ["GRANT SELECT ON `acct_site`.* TO `acct_webuser`@`%`"]
    wizard.act("check_environment")

    body = wizard.act("install_database", **DB_FIELDS).body

    assert body["success"] is False
    assert body["fallback_needed"] is True
    assert body["schema_installed"] is False
    assert wizard.session.tables_created is False


def test_schema_failure_is_a_storage_error(wizard, monkeypatch):
    monkeypatch.setattr(
        wizard.orchestrator.provisioner,
        "install_schema",
        lambda creds: SchemaInstallResult(success=False, failed_table="settings", message="disk full"),
    )
    wizard.act("check_environment")
    outcome = wizard.act("install_database", **DB_FIELDS)

    assert outcome.status_code == 500
    assert outcome.body["table"] == "settings"
    assert wizard.session.tables_created is False


def test_duplicate_admin_is_a_conflict(wizard):
    run_to_admin(wizard)
    outcome = wizard.act("create_admin", **ADMIN_FIELDS)
    assert outcome.status_code == 409
    assert outcome.body["error"] == "conflict"


def test_admin_validation_failure_keeps_flag_unset(wizard):
    wizard.act("check_environment")
    wizard.act("install_database", **DB_FIELDS)
    outcome = wizard.act("create_admin", email="owner@glowhost.com", password="short1", confirm_password="short1")
    assert outcome.status_code == 400
    assert wizard.session.admin_created is False


def test_database_locked_after_admin_created(wizard):
    run_to_admin(wizard)
    outcome = wizard.act("test_database", **DB_FIELDS, name="acct_other")
    assert outcome.status_code == 409


def test_database_checks_after_install_do_not_repoint_session(wizard):
    wizard.act("check_environment")
    installed = wizard.act("install_database", **DB_FIELDS).body["final_database"]
    token = wizard.token

    tested = wizard.act("test_database", **DB_FIELDS, name="acct_empty")
    assert tested.body["success"] is True
    assert wizard.act("intelligent_database_setup", **DB_FIELDS, name="acct_other").body["success"] is True

    assert wizard.session.database_config.name == installed
    assert wizard.session.tables_created is True
    assert wizard.token == token


def test_reinstalling_database_moves_session_to_new_schema(wizard):
    wizard.act("check_environment")
    wizard.act("install_database", **DB_FIELDS)

    body = wizard.act("install_database", **DB_FIELDS, name="acct_second").body

    assert body["schema_installed"] is True
    assert wizard.session.database_config.name == "acct_second"


def test_next_step_is_gated_and_previous_keeps_flags(wizard):
    assert wizard.act("next_step").status_code == 409

    wizard.act("check_environment")
    assert wizard.act("next_step").body["current_step"] == 2
    assert wizard.act("next_step", step=3).status_code == 409

    wizard.act("install_database", **DB_FIELDS)
    assert wizard.act("next_step").body["current_step"] == 3
    assert wizard.act("previous_step").body["current_step"] == 2
    assert wizard.session.tables_created is True


def test_install_system_requires_admin(wizard):
    wizard.act("check_environment")
    wizard.act("install_database", **DB_FIELDS)
    assert wizard.act("install_system").status_code == 409


def test_concurrent_writer_is_refused(wizard, tmp_path):
    run_to_admin(wizard)
    lock = tmp_path / INSTALL_LOCK
    lock.parent.mkdir(parents=True, exist_ok=True)
    lock.write_text(str(os.getpid()))

    outcome = wizard.act("install_system")

    assert outcome.status_code == 409
    assert wizard.session.config_generated is False
    assert not (tmp_path / ".env").exists()


def test_full_installation_completes_and_clears_session(wizard, tmp_path):
    run_to_admin(wizard)

    system = wizard.act("install_system").body
    assert system["success"] is True
    assert system["admin_url"] == "http://forms.glowhost.test/admin/"
    assert len(system["artifacts"]) == 5

    token = wizard.token
    outcome = wizard.act("complete_installation")

    assert outcome.session_cleared is True
    assert outcome.body["completion_time"] == "2026-03-01T12:00:00+00:00"
    assert outcome.body["contact_form_url"] == "http://forms.glowhost.test/"
    assert (tmp_path / INSTALL_MARKER).exists()
    assert (tmp_path / CLEANUP_MARKER).exists()
    assert not (tmp_path / INSTALL_LOCK).exists()
    assert wizard.orchestrator.store.load(token) is None


def test_completed_install_rejects_further_actions(wizard, tmp_path):
    marker = tmp_path / INSTALL_MARKER
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text("installed_at: earlier\n")

    outcome = wizard.act("check_environment")

    assert outcome.status_code == 409
    assert outcome.body["message"] == "Installation already completed"


def test_unreachable_database_during_admin_is_retryable(wizard, monkeypatch):
    wizard.act("check_environment")
    wizard.act("install_database", **DB_FIELDS)

    def unreachable(engine, **fields):
        raise ConnectivityError("Unable to connect to the database server. Check the host and port.")

    monkeypatch.setattr(wizard.orchestrator.registrar, "create_admin", unreachable)
    outcome = wizard.act("create_admin", **ADMIN_FIELDS)

    assert outcome.status_code == 503
    assert outcome.body["error"] == "connectivity_error"
    assert wizard.session.admin_created is False
