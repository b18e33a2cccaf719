from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from contact_setup.installer.database import DatabaseProvisioner
from contact_setup.installer.environment import INSTALL_MARKER
from contact_setup.service.orchestrator import CLEANUP_MARKER, InstallationOrchestrator
from contact_setup.service.service import create_app
from contact_setup.service.session_store import InMemorySessionStore

from conftest import FakeServer


class SqliteServer(FakeServer):
    def __init__(self, engine, **kwargs) -> None:
        super().__init__(**kwargs)
        self._engine = engine

    def engine(self, database=None):
        return self._engine


@pytest.fixture
def client(settings, observability, qualifier, fast_registrar, sqlite_engine):
    store = InMemorySessionStore()
    server = SqliteServer(sqlite_engine, grants=["GRANT ALL PRIVILEGES ON *.* TO `acct_webuser`@`%`"])
    orchestrator = InstallationOrchestrator(
        settings,
        store,
        observability,
        qualifier=qualifier,
        provisioner=DatabaseProvisioner(server_factory=lambda creds: server),
        registrar=fast_registrar,
        engine_factory=lambda *args, **kwargs: sqlite_engine,
    )
    app = create_app(settings, store=store, orchestrator=orchestrator)
    with TestClient(app) as test_client:
        yield test_client


def csrf(client: TestClient) -> str:
    return client.get("/install/state").json()["csrf_token"]


def mark_installed(root) -> None:
    marker = root / INSTALL_MARKER
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text("installed_at: earlier\n")
    (root / CLEANUP_MARKER).write_text("0\n")


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"

    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert {c["name"] for c in body["checks"]} == {"liveness", "session_store", "install_root"}


def test_state_creates_session_cookie(client, settings):
    resp = client.get("/install/state")
    assert resp.status_code == 200
    assert settings.session_cookie_name in resp.cookies
    body = resp.json()
    assert body["current_step"] == 1
    assert body["installed"] is False

    # the same session is resumed on the next visit
    assert client.get("/install/state").json()["csrf_token"] == body["csrf_token"]


def test_action_accepts_form_encoding(client):
    token = csrf(client)
    resp = client.post("/install/action", data={"action": "check_environment", "csrf_token": token})
    assert resp.status_code == 200
    assert resp.json()["can_proceed"] is True


def test_action_rejects_bad_csrf(client):
    csrf(client)
    resp = client.post("/install/action", json={"action": "check_environment", "csrf_token": "nope"})
    assert resp.status_code == 403
    assert client.get("/install/state").json()["environment_checked"] is False


def test_malformed_json_body(client):
    csrf(client)
    resp = client.post("/install/action", content=b"[1, 2]", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_full_wizard_over_http(client, tmp_path, settings):
    token = csrf(client)
    cookie_before = client.cookies.get(settings.session_cookie_name)

    def act(action, **fields):
        return client.post("/install/action", json={"action": action, "csrf_token": token, **fields})

    assert act("check_environment").json()["success"] is True
    assert act("next_step").json()["current_step"] == 2

    database = act("install_database", db_host="db.internal", db_username="acct_webuser", db_password="s3cret!")
    assert database.json()["schema_installed"] is True
    assert client.cookies.get(settings.session_cookie_name) != cookie_before

    admin = act("create_admin", email="owner@glowhost.com", password="Password1", confirm_password="Password1")
    assert admin.json()["admin"]["username"] == "admin"

    assert act("install_system").json()["success"] is True
    done = act("complete_installation")
    assert done.json()["success"] is True
    assert "completion_time" in done.json()

    # admin stays blocked until cleanup is acknowledged
    assert client.get("/admin").status_code == 423
    assert client.get("/admin/submissions").status_code == 423
    cleanup = client.get("/cleanup").json()
    assert cleanup["cleanup_required"] is True
    assert cleanup["installed_at"] == done.json()["completion_time"]
    assert client.get("/install/state").json()["installed"] is True

    ack = client.post("/cleanup/acknowledge")
    assert ack.status_code == 200
    assert not (tmp_path / CLEANUP_MARKER).exists()

    assert client.get("/admin").status_code == 200
    assert client.get("/install/state").status_code == 410
    assert act("check_environment").status_code == 410


def test_admin_blocked_while_installer_enabled(client, tmp_path):
    mark_installed(tmp_path)
    (tmp_path / CLEANUP_MARKER).unlink()
    # marker gone but the installer was never disabled
    assert client.get("/admin").status_code == 423
    assert client.get("/cleanup").json()["installed_at"] == "earlier"


def test_admin_before_installation(client):
    assert client.get("/admin").status_code == 409


def test_acknowledge_requires_completed_installation(client):
    resp = client.post("/cleanup/acknowledge")
    assert resp.status_code == 409
    assert resp.json()["error"] == "step_order"


def test_actions_rejected_once_installed(client, tmp_path):
    token = csrf(client)
    mark_installed(tmp_path)
    resp = client.post("/install/action", json={"action": "check_environment", "csrf_token": token})
    assert resp.status_code == 409
